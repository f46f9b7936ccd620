"""
Role memberships: which roles a user holds, at which scope, on which resource.

Every change is staged together with its audit entry and committed once.
"""
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core.exceptions import DuplicateCodeError, NotFoundError
from agilepm.features.organizations.models import DepartmentMember, TeamMember
from agilepm.features.permissions.audit import AuditTrail
from agilepm.features.permissions.models import AuditAction, RoleType
from agilepm.features.permissions.schemas import AuditContext, Principal, RoleRef
from agilepm.features.users.models import User, UserRoleAssignment
from agilepm.features.users.schemas import RoleGrant, ScopeContext, UserCreate
from agilepm.utils import get_logger


log = get_logger(__name__)

# resource_type -> ScopeContext attribute holding the id it must match
_RESOURCE_SCOPE = {
    "department": "department_id",
    "team": "team_id",
    "project": "project_id",
}


def _matches_context(assignment: UserRoleAssignment, context: ScopeContext) -> bool:
    if assignment.resource_type is None:
        return True
    attr = _RESOURCE_SCOPE.get(assignment.resource_type)
    if attr is None:
        return False
    return getattr(context, attr) == assignment.resource_id


class RoleMembershipService:
    """
    Usage:
        memberships = RoleMembershipService(db)
        ctx = AuditContext(actor_id=admin.id)
        await memberships.assign_role(ctx, RoleGrant(user_id=u.id, role_type="project",
                                                     role_name="developer",
                                                     resource_type="project", resource_id=p_id))
        roles = await memberships.get_role_refs(u.id, ScopeContext(project_id=p_id))
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.audit = AuditTrail(db)

    async def create_user(self, data: UserCreate) -> User:
        """
        Raises:
            DuplicateCodeError: if the username or email is taken
        """
        user = User(**data.model_dump())
        self.db.add(user)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateCodeError(f"Username {data.username!r} or email already registered")
        await self.db.refresh(user)
        return user

    async def get_user(self, user_id: str) -> User:
        user = await self.db.get(User, user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    async def assign_role(self, context: AuditContext, grant: RoleGrant) -> UserRoleAssignment:
        """
        Give a user a scoped role.

        Raises:
            NotFoundError: if the user does not exist
        """
        await self.get_user(grant.user_id)
        values = grant.model_dump(exclude_none=True)
        assignment = UserRoleAssignment(**values, assigned_by=context.actor_id)
        try:
            self.db.add(assignment)
            await self.db.flush()
            await self.audit.record(
                AuditAction.GRANT,
                grant.role_type,
                grant.role_name,
                context.model_copy(update={"target_user_id": grant.user_id}),
                resource_type=grant.resource_type,
                resource_id=grant.resource_id,
                new_role=grant.role_name,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(assignment)
        log.info(
            f"Assigned {grant.role_type.value}:{grant.role_name} to user {grant.user_id} "
            f"on {grant.resource_type}:{grant.resource_id}"
        )
        return assignment

    async def revoke_role(self, context: AuditContext, assignment_id: str) -> UserRoleAssignment:
        """
        Deactivate a scoped role. The row stays for history.

        Raises:
            NotFoundError: if the assignment does not exist or is already inactive
        """
        assignment = await self.db.get(UserRoleAssignment, assignment_id)
        if assignment is None or not assignment.is_active:
            raise NotFoundError(f"Role assignment {assignment_id} not found")
        try:
            assignment.is_active = False
            await self.audit.record(
                AuditAction.REVOKE,
                assignment.role_type,
                assignment.role_name,
                context.model_copy(update={"target_user_id": assignment.user_id}),
                resource_type=assignment.resource_type,
                resource_id=assignment.resource_id,
                old_role=assignment.role_name,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log.info(f"Revoked {assignment.role_type.value}:{assignment.role_name} from user {assignment.user_id}")
        return assignment

    async def change_system_role(self, context: AuditContext, user_id: str, new_role: Optional[str]) -> User:
        user = await self.get_user(user_id)
        old_role = user.system_role
        if old_role == new_role:
            return user
        try:
            user.system_role = new_role
            await self.audit.record(
                AuditAction.MODIFY,
                RoleType.SYSTEM,
                new_role or "",
                context.model_copy(update={"target_user_id": user_id}),
                old_role=old_role,
                new_role=new_role,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(user)
        log.info(f"Changed system role of user {user_id}: {old_role} -> {new_role}")
        return user

    async def list_assignments(self, user_id: str, include_inactive: bool = False) -> Sequence[UserRoleAssignment]:
        stmt = select(UserRoleAssignment).where(UserRoleAssignment.user_id == user_id)
        if not include_inactive:
            stmt = stmt.where(UserRoleAssignment.is_active.is_(True))
        result = await self.db.execute(stmt.order_by(UserRoleAssignment.created_at))
        return result.scalars().all()

    async def get_role_refs(
        self,
        user_id: str,
        context: Optional[ScopeContext] = None,
        now: Optional[datetime] = None,
    ) -> set[RoleRef]:
        """
        Roles the user holds for a request in ``context``.

        An inactive or unknown user holds no roles.
        """
        context = context or ScopeContext()
        now = now or datetime.now(timezone.utc)

        user = await self.db.get(User, user_id)
        if user is None or not user.is_active:
            return set()

        roles: set[RoleRef] = set()
        if user.system_role:
            roles.add(RoleRef(role_type=RoleType.SYSTEM, role_name=user.system_role))

        for assignment in await self.list_assignments(user_id):
            if assignment.is_valid(now) and _matches_context(assignment, context):
                roles.add(RoleRef(role_type=assignment.role_type, role_name=assignment.role_name))

        if context.department_id:
            result = await self.db.execute(
                select(DepartmentMember.role).where(
                    DepartmentMember.department_id == context.department_id,
                    DepartmentMember.user_id == user_id,
                    DepartmentMember.is_active.is_(True),
                )
            )
            role = result.scalar_one_or_none()
            if role:
                roles.add(RoleRef(role_type=RoleType.DIVISION, role_name=role))

        if context.team_id:
            result = await self.db.execute(
                select(TeamMember.role).where(
                    TeamMember.team_id == context.team_id,
                    TeamMember.user_id == user_id,
                    TeamMember.is_active.is_(True),
                )
            )
            role = result.scalar_one_or_none()
            if role:
                roles.add(RoleRef(role_type=RoleType.TEAM, role_name=role))

        return roles

    async def build_principal(self, user_id: str, context: Optional[ScopeContext] = None) -> Principal:
        """Principal for ``request.state.principal``."""
        roles = await self.get_role_refs(user_id, context)
        return Principal(user_id=user_id, roles=frozenset(roles))
