"""
Permission catalog, role-permission map and permission audit log models.

This module implements the storage side of the layered RBAC system:
- A catalog of permission codes grouped by category
- Role-permission assignments at one of four scopes (system, division, team, project)
- Optional per-assignment conditions stored as JSON
- An append-only audit trail of grant/revoke/modify actions
"""
from datetime import datetime
from typing import Any, Dict
import enum

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    JSON,
    String,
    Text,
    UniqueConstraint,
    event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from agilepm.core.database.base import Base, TimestampMixin, generate_ulid


class RoleType(str, enum.Enum):
    """Scope at which a role applies. Declared from least to most specific."""
    SYSTEM = "system"
    DIVISION = "division"
    TEAM = "team"
    PROJECT = "project"

    @property
    def precedence(self) -> int:
        """Higher wins when several scopes grant the same permission."""
        return _PRECEDENCE[self]


_PRECEDENCE = {
    RoleType.SYSTEM: 0,
    RoleType.DIVISION: 1,
    RoleType.TEAM: 2,
    RoleType.PROJECT: 3,
}


class PermissionCategory(str, enum.Enum):
    SYSTEM = "system"
    DIVISION = "division"
    TEAM = "team"
    PROJECT = "project"
    COMMON = "common"


class AuditAction(str, enum.Enum):
    GRANT = "grant"
    REVOKE = "revoke"
    MODIFY = "modify"


class Permission(Base, TimestampMixin):
    """
    A permission code in the catalog.

    Examples:
    - code="task.edit", category=project
    - code="manage_departments", category=system

    Inactive permissions stay in the table so audit history keeps resolving,
    but they never grant access.
    """
    __tablename__ = "rbac_permissions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[PermissionCategory] = mapped_column(
        SQLEnum(PermissionCategory),
        default=PermissionCategory.COMMON,
        nullable=False,
        index=True,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<Permission(id={self.id}, code={self.code!r}, category={self.category.value})>"


class RolePermission(Base):
    """
    Assignment of a permission to a named role at one scope.

    Conditional assignments carry a ``condition_type`` tag and a JSON
    ``condition_config`` interpreted by the condition evaluator, e.g.
    condition_type="own_only", condition_config={"owner_field": "assigned_to"}.
    """
    __tablename__ = "role_permissions"
    __table_args__ = (
        UniqueConstraint("role_type", "role_name", "permission_id", name="unique_role_permission"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    role_type: Mapped[RoleType] = mapped_column(SQLEnum(RoleType), nullable=False, index=True)
    role_name: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    permission_id: Mapped[str] = mapped_column(
        String(26),
        ForeignKey("rbac_permissions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    is_conditional: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    condition_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    condition_config: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<RolePermission(id={self.id}, role={self.role_type.value}:{self.role_name}, "
            f"permission_id={self.permission_id}, conditional={self.is_conditional})>"
        )


class PermissionAuditLog(Base):
    """
    Append-only record of one change to role/permission state.

    Rows are never updated or deleted; ``created_at`` is the ordering key.
    """
    __tablename__ = "permission_audit_logs"
    __table_args__ = (
        Index("idx_perm_audit_actor_created", "user_id", "created_at"),
        Index("idx_perm_audit_target_created", "target_user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    # Actor and the user whose effective access changed
    user_id: Mapped[str] = mapped_column(String(26), nullable=False)
    target_user_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    action: Mapped[AuditAction] = mapped_column(SQLEnum(AuditAction), nullable=False, index=True)
    role_type: Mapped[str] = mapped_column(String(50), nullable=False)
    role_name: Mapped[str] = mapped_column(String(50), nullable=False)
    permission_code: Mapped[str | None] = mapped_column(String(100), nullable=True)

    resource_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    # Snapshots: role names for membership changes, condition payloads for assignment changes
    old_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    new_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    old_value: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return (
            f"<PermissionAuditLog(id={self.id}, actor={self.user_id}, action={self.action.value}, "
            f"role={self.role_type}:{self.role_name}, permission={self.permission_code})>"
        )


class AuditLogImmutableError(RuntimeError):
    pass


@event.listens_for(PermissionAuditLog, "before_update")
def _reject_audit_update(_mapper, _connection, target: PermissionAuditLog) -> None:
    raise AuditLogImmutableError(f"Audit entry {target.id} is append-only")


@event.listens_for(PermissionAuditLog, "before_delete")
def _reject_audit_delete(_mapper, _connection, target: PermissionAuditLog) -> None:
    raise AuditLogImmutableError(f"Audit entry {target.id} is append-only")
