"""
Append-only audit trail for role/permission changes.

``AuditTrail.record`` only adds the entry to the session; the caller commits
it together with the change it describes, so both persist or neither does.
"""
import math
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.features.permissions.models import AuditAction, PermissionAuditLog, RoleType
from agilepm.features.permissions.schemas import AuditContext, AuditLogListResponse, AuditLogResponse
from agilepm.utils import get_logger


log = get_logger(__name__)


class _MonotonicClock:
    """UTC wall clock that never returns the same or an earlier instant twice."""

    def __init__(self):
        self._lock = threading.Lock()
        self._last: datetime | None = None

    def now(self) -> datetime:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current


audit_clock = _MonotonicClock()


class AuditTrail:
    """
    Writes and reads PermissionAuditLog entries.

    Usage:
        audit = AuditTrail(db)
        audit.record(AuditAction.GRANT, RoleType.TEAM, "developer", ctx, permission_code="task.edit")
        await db.commit()
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        action: AuditAction,
        role_type: RoleType | str,
        role_name: str,
        context: AuditContext,
        *,
        permission_code: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        old_role: Optional[str] = None,
        new_role: Optional[str] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
    ) -> PermissionAuditLog:
        """
        Stage one audit entry in the current transaction.

        Args:
            action: grant, revoke or modify
            role_type: Scope of the role involved
            role_name: Role involved
            context: Actor, target user, reason and request provenance
            permission_code: Permission involved (assignment changes)
            old_role / new_role: Role snapshots (membership changes)
            old_value / new_value: Condition snapshots (assignment changes)

        Returns:
            The staged (flushed, uncommitted) entry
        """
        entry = PermissionAuditLog(
            user_id=context.actor_id,
            target_user_id=context.target_user_id,
            action=action,
            role_type=role_type.value if isinstance(role_type, RoleType) else role_type,
            role_name=role_name,
            permission_code=permission_code,
            resource_type=resource_type,
            resource_id=resource_id,
            old_role=old_role,
            new_role=new_role,
            old_value=old_value,
            new_value=new_value,
            reason=context.reason,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            created_at=audit_clock.now(),
        )
        self.db.add(entry)
        await self.db.flush()

        log.info(
            f"Audit: actor={context.actor_id} action={entry.action.value} "
            f"role={entry.role_type}:{role_name} permission={permission_code} target={context.target_user_id}"
        )
        return entry

    async def query(
        self,
        *,
        actor_id: Optional[str] = None,
        target_user_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        role_type: Optional[RoleType | str] = None,
        permission_code: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 50,
    ) -> AuditLogListResponse:
        """Query audit entries, newest first, with filters and pagination."""
        conditions = []
        if actor_id:
            conditions.append(PermissionAuditLog.user_id == actor_id)
        if target_user_id:
            conditions.append(PermissionAuditLog.target_user_id == target_user_id)
        if action:
            conditions.append(PermissionAuditLog.action == action)
        if role_type:
            value = role_type.value if isinstance(role_type, RoleType) else role_type
            conditions.append(PermissionAuditLog.role_type == value)
        if permission_code:
            conditions.append(PermissionAuditLog.permission_code == permission_code)
        if start_date:
            conditions.append(PermissionAuditLog.created_at >= start_date)
        if end_date:
            conditions.append(PermissionAuditLog.created_at <= end_date)

        page = max(1, page)
        page_size = max(1, page_size)

        count_stmt = select(func.count()).select_from(PermissionAuditLog).where(*conditions)
        total = (await self.db.execute(count_stmt)).scalar_one()

        stmt = (
            select(PermissionAuditLog)
            .where(*conditions)
            .order_by(PermissionAuditLog.created_at.desc(), PermissionAuditLog.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        rows = (await self.db.execute(stmt)).scalars().all()

        return AuditLogListResponse(
            items=[AuditLogResponse.model_validate(row) for row in rows],
            total=total,
            page=page,
            page_size=page_size,
            pages=math.ceil(total / page_size) if total else 0,
        )
