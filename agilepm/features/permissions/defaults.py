"""
Default permission catalog, role matrices and conditional rules.

``seed_defaults`` loads them through the catalog and the role map, so every
grant it makes is audited like any other. Running it again only adds what is
missing.
"""
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core.exceptions import DuplicateCodeError
from agilepm.features.permissions.catalog import PermissionCatalog
from agilepm.features.permissions.models import PermissionCategory, RoleType
from agilepm.features.permissions.role_map import RolePermissionMap
from agilepm.features.permissions.schemas import AuditContext, RoleAssignmentCreate
from agilepm.utils import get_logger


log = get_logger(__name__)


DEFAULT_PERMISSIONS: dict[PermissionCategory, list[tuple[str, str]]] = {
    PermissionCategory.SYSTEM: [
        ("manage_users", "Manage users"),
        ("manage_all_users", "Manage all users"),
        ("manage_global_roles", "Manage global roles"),
        ("manage_departments", "Manage departments"),
        ("manage_all_teams", "Manage all teams"),
        ("manage_team", "Manage a team"),
        ("manage_all_projects", "Manage all projects"),
        ("view_audit_logs", "View audit logs"),
        ("manage_audit_logs", "Manage audit logs"),
        ("manage_ai", "Manage AI settings"),
        ("override_permission", "Override permission checks"),
        ("view_all_reports", "View all reports"),
    ],
    PermissionCategory.DIVISION: [
        ("view_division_projects", "View division projects"),
        ("create_project", "Create project"),
        ("edit_project", "Edit project"),
        ("delete_project", "Delete project"),
        ("view_division_sprints", "View division sprints"),
        ("approve_workflow", "Approve workflow"),
        ("manage_division_members", "Manage division members"),
        ("manage_division_teams", "Manage division teams"),
        ("manage_leave_delegation", "Manage leave delegation"),
    ],
    PermissionCategory.TEAM: [
        ("manage_team_members", "Manage team members"),
        ("assign_task", "Assign task"),
        ("prioritize_backlog", "Prioritize backlog"),
        ("manage_sprint", "Manage sprint"),
        ("start_end_sprint", "Start and end sprint"),
        ("qa_approval", "QA approval"),
        ("edit_task", "Edit task"),
        ("move_task_kanban", "Move task on the board"),
        ("delete_task", "Delete task"),
    ],
    PermissionCategory.PROJECT: [
        ("edit_project_details", "Edit project details"),
        ("delete_project_details", "Delete project details"),
        ("create_sprint", "Create sprint"),
        ("edit_sprint", "Edit sprint"),
        ("create_task", "Create task"),
        ("edit_task_details", "Edit task details"),
        ("qa_testing", "QA testing"),
        ("change_task_status", "Change task status"),
        ("view_report", "View report"),
        ("workload_management", "Workload management"),
    ],
    PermissionCategory.COMMON: [
        ("view_project", "View project"),
        ("view_task", "View task"),
        ("view_sprint", "View sprint"),
        ("add_comment", "Add comment"),
        ("upload_attachment", "Upload attachment"),
        ("log_time", "Log time"),
    ],
}

ALL_PERMISSION_CODES = [code for entries in DEFAULT_PERMISSIONS.values() for code, _ in entries]

_COLLABORATE = ["add_comment", "upload_attachment", "log_time"]

# role_type -> role_name -> unconditional permission codes
DEFAULT_MATRIX: dict[RoleType, dict[str, list[str]]] = {
    RoleType.SYSTEM: {
        "super_admin": ALL_PERMISSION_CODES,
        "admin": [
            "manage_users", "manage_all_users", "manage_global_roles", "manage_departments",
            "manage_all_teams", "manage_team", "manage_all_projects", "manage_ai", "view_all_reports",
        ],
        "security_officer": ["view_audit_logs", "manage_audit_logs", "view_all_reports"],
        "ai_admin": ["manage_ai", "view_all_reports"],
    },
    RoleType.DIVISION: {
        "division_head": [
            "view_division_projects", "create_project", "edit_project", "delete_project",
            "view_division_sprints", "approve_workflow", "manage_division_members", "manage_division_teams",
        ],
        "division_manager": [
            "view_division_projects", "create_project", "edit_project",
            "view_division_sprints", "approve_workflow", "manage_division_members", "manage_division_teams",
        ],
        "division_viewer": ["view_division_projects"],
        "hr_reviewer": ["approve_workflow", "manage_leave_delegation"],
    },
    RoleType.TEAM: {
        "team_admin": [
            "manage_team_members", "assign_task", "prioritize_backlog", "manage_sprint",
            "start_end_sprint", "edit_task", "move_task_kanban", "delete_task", *_COLLABORATE,
        ],
        "team_lead": [
            "assign_task", "prioritize_backlog", "manage_sprint", "start_end_sprint",
            "edit_task", "move_task_kanban", "delete_task", *_COLLABORATE,
        ],
        "scrum_master": [
            "assign_task", "manage_sprint", "start_end_sprint", "edit_task", "move_task_kanban", *_COLLABORATE,
        ],
        "product_owner": ["assign_task", "prioritize_backlog", "edit_task", "move_task_kanban", *_COLLABORATE],
        "qa_lead": ["qa_approval", "edit_task", "move_task_kanban", *_COLLABORATE],
        "member": ["move_task_kanban", *_COLLABORATE],
    },
    RoleType.PROJECT: {
        "project_owner": [
            "edit_project_details", "delete_project_details", "create_sprint", "edit_sprint", "create_task",
            "edit_task_details", "change_task_status", "view_report", "workload_management",
            "manage_team_members", "assign_task", "delete_task", *_COLLABORATE,
        ],
        "project_manager": [
            "edit_project_details", "create_sprint", "edit_sprint", "create_task", "edit_task_details",
            "change_task_status", "view_report", "workload_management", "assign_task", "delete_task",
            *_COLLABORATE,
        ],
        "tech_lead": [
            "create_task", "edit_task_details", "change_task_status", "view_report", "workload_management",
            *_COLLABORATE,
        ],
        "qa_tester": ["qa_testing", "change_task_status", "view_report", *_COLLABORATE],
        "developer": ["create_task", "move_task_kanban", *_COLLABORATE],
        "report_viewer": ["view_report", "view_project", "view_task", "view_sprint"],
        "stakeholder": ["view_report", "view_project", "view_task", "view_sprint"],
    },
}

# (role_type, role_name, permission_code) -> (condition_type, condition_config)
CONDITIONAL_RULES: dict[tuple[RoleType, str, str], tuple[str, Dict[str, Any]]] = {
    (RoleType.SYSTEM, "admin", "view_audit_logs"): (
        "partial", {"filter": {"exclude_fields": ["ip_address", "sensitive_data"]}},
    ),
    (RoleType.DIVISION, "division_viewer", "view_division_sprints"): (
        "partial", {"filter": {"summary_only": True}},
    ),
    (RoleType.DIVISION, "hr_reviewer", "view_division_projects"): (
        "partial", {"filter": {"hr_data_only": True}},
    ),
    (RoleType.TEAM, "team_lead", "manage_team_members"): (
        "partial", {"restriction": {"exclude_roles": ["team_admin"]}},
    ),
    (RoleType.TEAM, "member", "edit_task"): ("own_only", {}),
    (RoleType.PROJECT, "tech_lead", "edit_sprint"): (
        "partial", {"restriction": {"exclude_actions": ["start", "complete"]}},
    ),
    (RoleType.PROJECT, "qa_tester", "edit_task_details"): (
        "qa_fields_only", {"fields": ["qa_status", "test_notes", "bug_details"]},
    ),
    (RoleType.PROJECT, "developer", "edit_task_details"): ("own_only", {}),
    (RoleType.PROJECT, "developer", "change_task_status"): ("own_only", {}),
    (RoleType.PROJECT, "developer", "view_report"): (
        "partial", {"filter": {"basic_reports_only": True}},
    ),
}


def default_assignments() -> list[RoleAssignmentCreate]:
    """The default matrix and conditional rules as assignment requests."""
    assignments = []
    for role_type, roles in DEFAULT_MATRIX.items():
        for role_name, codes in roles.items():
            for code in dict.fromkeys(codes):
                assignments.append(
                    RoleAssignmentCreate(role_type=role_type, role_name=role_name, permission_code=code)
                )
    for (role_type, role_name, code), (condition_type, config) in CONDITIONAL_RULES.items():
        assignments.append(
            RoleAssignmentCreate(
                role_type=role_type,
                role_name=role_name,
                permission_code=code,
                condition_type=condition_type,
                condition_config=config,
            )
        )
    return assignments


async def seed_defaults(db: AsyncSession, context: AuditContext) -> int:
    """
    Register the default permissions and grant the default matrix.

    Returns:
        Number of new role-permission assignments
    """
    catalog = PermissionCatalog(db)
    registered = 0
    for category, entries in DEFAULT_PERMISSIONS.items():
        for code, name in entries:
            try:
                await catalog.register(code, name, category)
                registered += 1
            except DuplicateCodeError:
                log.debug(f"Permission {code} already registered, skipping")
    log.info(f"Registered {registered} default permissions")

    created = await RolePermissionMap(db).bulk_assign(default_assignments(), context, skip_existing=True)
    log.info(f"Granted {len(created)} default role permissions")
    return len(created)
