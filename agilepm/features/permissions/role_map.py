"""
Role-permission map: which roles hold which permissions, at which scope.

Every successful assign / revoke / modify commits the assignment change and
exactly one audit entry in the same transaction. Mutations on the same
(role_type, role_name, permission_code) key are serialized in-process; the
unique constraint on role_permissions covers concurrent writers elsewhere.
"""
import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import Any, Dict, Iterable, Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core.database.retry import retry_transient
from agilepm.core.exceptions import (
    DuplicateAssignmentError,
    NotFoundError,
    UnknownConditionError,
    ValidationError,
)
from agilepm.features.permissions.audit import AuditTrail
from agilepm.features.permissions.catalog import PermissionCatalog, validation_message
from agilepm.features.permissions.conditions import is_known_condition, parse_condition
from agilepm.features.permissions.models import AuditAction, Permission, RolePermission, RoleType
from agilepm.features.permissions.schemas import AuditContext, RoleAssignmentCreate
from agilepm.utils import get_logger


log = get_logger(__name__)

AssignmentKey = tuple[RoleType, str, str]


class _KeyedLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLocks:
    """
    One asyncio.Lock per key, kept separately for each running event loop.

    A key's lock lives only while some task holds or waits for it.
    """

    def __init__(self):
        self._by_loop: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[Any, _KeyedLock]]" = (
            weakref.WeakKeyDictionary()
        )

    @asynccontextmanager
    async def hold(self, key):
        locks = self._by_loop.setdefault(asyncio.get_running_loop(), {})
        entry = locks.get(key)
        if entry is None:
            entry = locks[key] = _KeyedLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del locks[key]

    def active_keys(self) -> int:
        """Keys with a holder or waiter on the running loop."""
        return len(self._by_loop.get(asyncio.get_running_loop(), {}))


_assignment_locks = KeyedLocks()


def parse_role_type(role_type: RoleType | str) -> RoleType:
    try:
        return RoleType(role_type)
    except ValueError:
        raise ValidationError(f"Unknown role type {role_type!r}")


def _condition_snapshot(assignment: RolePermission) -> Dict[str, Any]:
    return {
        "is_conditional": assignment.is_conditional,
        "condition_type": assignment.condition_type,
        "condition_config": assignment.condition_config,
    }


class RolePermissionMap:
    """
    Assigns permissions to roles and keeps the audit trail in step.

    Usage:
        role_map = RolePermissionMap(db)
        ctx = AuditContext(actor_id=admin.id, ip_address=request.client.host)
        await role_map.assign(RoleType.TEAM, "member", "edit_task", ctx,
                              condition_type="own_only")
    """

    def __init__(self, db: AsyncSession):
        self.db = db
        self.catalog = PermissionCatalog(db)
        self.audit = AuditTrail(db)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def assign(
        self,
        role_type: RoleType | str,
        role_name: str,
        permission_code: str,
        context: AuditContext,
        condition_type: Optional[str] = None,
        condition_config: Optional[Dict[str, Any]] = None,
    ) -> RolePermission:
        """
        Grant a permission to a role.

        Raises:
            UnknownPermissionError: if the code is absent or inactive
            DuplicateAssignmentError: if the role already holds the permission
            ValidationError: if the role or the condition is malformed
        """
        try:
            data = RoleAssignmentCreate(
                role_type=role_type,
                role_name=role_name,
                permission_code=permission_code,
                condition_type=condition_type,
                condition_config=condition_config,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid assignment of {permission_code!r}: {validation_message(e)}") from e
        self._validate_condition(data.condition_type, data.condition_config)

        key: AssignmentKey = (data.role_type, data.role_name, data.permission_code)
        async with _assignment_locks.hold(key):
            return await retry_transient(
                lambda: self._assign(data, context),
                description=f"assign {data.permission_code} to {data.role_type.value}:{data.role_name}",
            )

    async def revoke(
        self,
        role_type: RoleType | str,
        role_name: str,
        permission_code: str,
        context: AuditContext,
    ) -> None:
        """
        Remove a permission from a role.

        Raises:
            NotFoundError: if the role does not hold the permission
            ValidationError: if the role type is unknown
        """
        role_type = parse_role_type(role_type)
        key: AssignmentKey = (role_type, role_name, permission_code)
        async with _assignment_locks.hold(key):
            await retry_transient(
                lambda: self._revoke(role_type, role_name, permission_code, context),
                description=f"revoke {permission_code} from {role_type.value}:{role_name}",
            )

    async def modify(
        self,
        role_type: RoleType | str,
        role_name: str,
        permission_code: str,
        context: AuditContext,
        condition_type: Optional[str] = None,
        condition_config: Optional[Dict[str, Any]] = None,
    ) -> RolePermission:
        """
        Replace the condition on an existing assignment. Passing no condition
        makes the assignment unconditional.

        Raises:
            NotFoundError: if the role does not hold the permission
            ValidationError: if the role type or the condition is malformed
        """
        role_type = parse_role_type(role_type)
        self._validate_condition(condition_type, condition_config)
        key: AssignmentKey = (role_type, role_name, permission_code)
        async with _assignment_locks.hold(key):
            return await retry_transient(
                lambda: self._modify(role_type, role_name, permission_code, condition_type, condition_config, context),
                description=f"modify {permission_code} on {role_type.value}:{role_name}",
            )

    async def bulk_assign(
        self,
        assignments: Iterable[RoleAssignmentCreate],
        context: AuditContext,
        skip_existing: bool = False,
    ) -> list[RolePermission]:
        """
        Apply many assignments. Each one is its own transaction with its own
        audit entry; with ``skip_existing`` duplicates are skipped instead of
        aborting the batch.
        """
        created = []
        for item in assignments:
            try:
                created.append(
                    await self.assign(
                        item.role_type,
                        item.role_name,
                        item.permission_code,
                        context,
                        condition_type=item.condition_type,
                        condition_config=item.condition_config,
                    )
                )
            except DuplicateAssignmentError:
                if not skip_existing:
                    raise
                log.debug(f"Skipping existing assignment {item.role_type.value}:{item.role_name}:{item.permission_code}")
        return created

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def list_for_role(self, role_type: RoleType | str, role_name: str) -> set[RolePermission]:
        stmt = select(RolePermission).where(
            and_(
                RolePermission.role_type == parse_role_type(role_type),
                RolePermission.role_name == role_name,
            )
        )
        result = await self.db.execute(stmt)
        return set(result.scalars().all())

    async def list_for_permission(self, permission_code: str) -> Sequence[RolePermission]:
        stmt = (
            select(RolePermission)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(Permission.code == permission_code)
            .order_by(RolePermission.role_type, RolePermission.role_name)
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def get(self, role_type: RoleType | str, role_name: str, permission_code: str) -> Optional[RolePermission]:
        stmt = (
            select(RolePermission)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(
                and_(
                    RolePermission.role_type == parse_role_type(role_type),
                    RolePermission.role_name == role_name,
                    Permission.code == permission_code,
                )
            )
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # Units of work
    # ------------------------------------------------------------------

    async def _assign(self, data: RoleAssignmentCreate, context: AuditContext) -> RolePermission:
        try:
            permission = await self.catalog.require_active(data.permission_code)
            if await self.get(data.role_type, data.role_name, data.permission_code) is not None:
                raise DuplicateAssignmentError(
                    f"Permission {data.permission_code!r} already assigned to "
                    f"{data.role_type.value}:{data.role_name}"
                )

            assignment = RolePermission(
                role_type=data.role_type,
                role_name=data.role_name,
                permission_id=permission.id,
                is_conditional=data.condition_type is not None,
                condition_type=data.condition_type,
                condition_config=data.condition_config,
            )
            self.db.add(assignment)
            await self.audit.record(
                AuditAction.GRANT,
                data.role_type,
                data.role_name,
                context,
                permission_code=data.permission_code,
                new_value=_condition_snapshot(assignment),
            )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateAssignmentError(
                f"Permission {data.permission_code!r} already assigned to {data.role_type.value}:{data.role_name}"
            )
        except Exception:
            await self.db.rollback()
            raise

        await self.db.refresh(assignment)
        log.info(f"Granted {data.permission_code} to {data.role_type.value}:{data.role_name}")
        return assignment

    async def _revoke(self, role_type: RoleType, role_name: str, permission_code: str, context: AuditContext) -> None:
        try:
            assignment = await self.get(role_type, role_name, permission_code)
            if assignment is None:
                raise NotFoundError(
                    f"Role-permission mapping {role_type.value}:{role_name}:{permission_code} not found"
                )
            snapshot = _condition_snapshot(assignment)
            await self.db.delete(assignment)
            await self.audit.record(
                AuditAction.REVOKE,
                role_type,
                role_name,
                context,
                permission_code=permission_code,
                old_value=snapshot,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log.info(f"Revoked {permission_code} from {role_type.value}:{role_name}")

    async def _modify(
        self,
        role_type: RoleType,
        role_name: str,
        permission_code: str,
        condition_type: Optional[str],
        condition_config: Optional[Dict[str, Any]],
        context: AuditContext,
    ) -> RolePermission:
        try:
            assignment = await self.get(role_type, role_name, permission_code)
            if assignment is None:
                raise NotFoundError(
                    f"Role-permission mapping {role_type.value}:{role_name}:{permission_code} not found"
                )
            old = _condition_snapshot(assignment)
            assignment.is_conditional = condition_type is not None
            assignment.condition_type = condition_type
            assignment.condition_config = condition_config
            await self.audit.record(
                AuditAction.MODIFY,
                role_type,
                role_name,
                context,
                permission_code=permission_code,
                old_value=old,
                new_value=_condition_snapshot(assignment),
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        log.info(f"Modified condition of {permission_code} on {role_type.value}:{role_name}")
        return assignment

    @staticmethod
    def _validate_condition(condition_type: Optional[str], condition_config: Optional[Dict[str, Any]]) -> None:
        if condition_type is None:
            if condition_config:
                raise ValidationError("condition_config given without condition_type")
            return
        if not is_known_condition(condition_type):
            # Stored as-is; the evaluator denies it until support is added
            log.warning(f"Assigning unsupported condition type {condition_type!r}")
            return
        try:
            parse_condition(condition_type, condition_config)
        except UnknownConditionError as e:
            raise ValidationError(e.message) from e
