"""
Permission management feature module.

Layered Role-Based Access Control: a permission catalog, role-permission
assignments at system, division, team and project scope, conditional grants
and an append-only audit trail.
"""
