"""
Permission resolution across the four role scopes.

Given the (role_type, role_name) pairs a user holds, the resolver collects
every assignment of the requested permission code, picks the winner by scope
(project > team > division > system), prefers an unconditional grant within
the winning scope, and evaluates the condition if the winner has one.
Resolution never writes and never takes the assignment lock. A transient
storage failure rolls the session back before the read is retried.
"""
from collections.abc import Awaitable, Callable, Collection
from typing import Optional, Sequence, TypeVar

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core.database.retry import TRANSIENT_ERRORS, retry_transient
from agilepm.core.exceptions import UnknownConditionError, UnknownPermissionError
from agilepm.features.permissions.catalog import PermissionCatalog
from agilepm.features.permissions.conditions import ConditionEvaluator
from agilepm.features.permissions.models import Permission, RolePermission
from agilepm.features.permissions.schemas import (
    AccessRequest,
    EffectivePermission,
    ResolutionResult,
    RoleRef,
)
from agilepm.utils import get_logger


log = get_logger(__name__)

T = TypeVar("T")


def _roles_clause(roles: Collection[RoleRef]):
    return or_(
        *(
            and_(RolePermission.role_type == role.role_type, RolePermission.role_name == role.role_name)
            for role in roles
        )
    )


def pick_winner(assignments: Sequence[RolePermission]) -> RolePermission:
    """
    Choose the assignment that decides access.

    The most specific scope wins; inside it an unconditional grant beats a
    conditional one; remaining ties go to the alphabetically first role name.
    """
    top = max(a.role_type.precedence for a in assignments)
    tier = [a for a in assignments if a.role_type.precedence == top]
    return min(tier, key=lambda a: (a.is_conditional, a.role_name))


class PermissionResolver:
    """
    Decides allow/deny for one user, one permission code and one resource.

    Usage:
        resolver = PermissionResolver(db)
        result = await resolver.resolve(
            {RoleRef(role_type="team", role_name="member")},
            "edit_task",
            AccessRequest(user_id=user.id, resource_type="task", resource_id=task.id,
                          resource_owner_id=task.assigned_to),
        )
        if not result.allowed:
            raise HTTPException(status_code=403)
    """

    def __init__(self, db: AsyncSession, evaluator: Optional[ConditionEvaluator] = None):
        self.db = db
        self.catalog = PermissionCatalog(db)
        self.evaluator = evaluator or ConditionEvaluator()

    async def resolve(
        self,
        roles: Collection[RoleRef],
        permission_code: str,
        request: AccessRequest,
    ) -> ResolutionResult:
        """
        Resolve one permission. Unknown permissions and unsupported
        conditions come back as denials with ``reason``/``error`` set.
        """
        try:
            return await self._resolve(roles, permission_code, request)
        except UnknownPermissionError as e:
            log.debug(f"User {request.user_id} denied {permission_code}: {e.message}")
            return ResolutionResult(
                allowed=False,
                permission_code=permission_code,
                reason="unknown_permission",
                error=e.message,
            )

    async def resolve_or_raise(
        self,
        roles: Collection[RoleRef],
        permission_code: str,
        request: AccessRequest,
    ) -> ResolutionResult:
        """
        Same as ``resolve`` but lets UnknownPermissionError propagate.
        """
        return await self._resolve(roles, permission_code, request)

    async def check_many(
        self,
        roles: Collection[RoleRef],
        permission_codes: Sequence[str],
        request: AccessRequest,
    ) -> dict[str, ResolutionResult]:
        """Resolve several codes for the same user and resource."""
        return {code: await self.resolve(roles, code, request) for code in permission_codes}

    async def effective_permissions(self, roles: Collection[RoleRef]) -> list[EffectivePermission]:
        """
        Every active permission the roles grant, with the scope and role that
        win for each code. Conditions are reported, not evaluated.
        """
        if not roles:
            return []

        stmt = (
            select(Permission.code, RolePermission)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(and_(Permission.is_active.is_(True), _roles_clause(roles)))
        )
        rows = (await self._read(lambda: self.db.execute(stmt), "load effective permissions")).all()

        by_code: dict[str, list[RolePermission]] = {}
        for code, assignment in rows:
            by_code.setdefault(code, []).append(assignment)

        effective = []
        for code in sorted(by_code):
            winner = pick_winner(by_code[code])
            effective.append(
                EffectivePermission(
                    permission_code=code,
                    scope=winner.role_type,
                    role_name=winner.role_name,
                    conditional=winner.is_conditional,
                    condition_type=winner.condition_type,
                )
            )
        return effective

    async def _resolve(
        self,
        roles: Collection[RoleRef],
        permission_code: str,
        request: AccessRequest,
    ) -> ResolutionResult:
        permission = await self._read(lambda: self.catalog.require_active(permission_code), f"look up {permission_code}")

        assignments = await self._load_assignments(permission, roles)
        if not assignments:
            log.debug(f"User {request.user_id} denied {permission_code}: no assignment")
            return ResolutionResult(allowed=False, permission_code=permission_code, reason="no_assignment")

        winner = pick_winner(assignments)
        result = ResolutionResult(
            allowed=True,
            permission_code=permission_code,
            scope_matched=winner.role_type,
            role_name=winner.role_name,
            conditional=winner.is_conditional,
            condition_type=winner.condition_type,
        )
        if not winner.is_conditional:
            log.debug(f"User {request.user_id} granted {permission_code} via {winner.role_type.value}:{winner.role_name}")
            return result

        try:
            allowed = self.evaluator.evaluate(winner.condition_type, winner.condition_config, request)
        except UnknownConditionError as e:
            log.warning(
                f"Denying {permission_code} for user {request.user_id}: condition on "
                f"{winner.role_type.value}:{winner.role_name} could not be evaluated ({e.message})"
            )
            return result.model_copy(update={"allowed": False, "reason": "unknown_condition", "error": e.message})

        if not allowed:
            log.debug(f"User {request.user_id} denied {permission_code}: {winner.condition_type} condition failed")
            return result.model_copy(update={"allowed": False, "reason": "condition_failed"})

        return result.model_copy(update={"restriction": winner.condition_config})

    async def _load_assignments(self, permission: Permission, roles: Collection[RoleRef]) -> Sequence[RolePermission]:
        if not roles:
            return []
        stmt = select(RolePermission).where(
            and_(RolePermission.permission_id == permission.id, _roles_clause(roles))
        )
        result = await self._read(lambda: self.db.execute(stmt), f"load assignments for {permission.code}")
        return result.scalars().all()

    async def _read(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        """Run a read under ``retry_transient``, rolling back after each transient failure."""

        async def attempt() -> T:
            try:
                return await operation()
            except TRANSIENT_ERRORS:
                # The failed transaction is unusable; the next attempt opens a fresh one
                await self.db.rollback()
                raise

        return await retry_transient(attempt, description=description)
