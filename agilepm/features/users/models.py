"""
User and role membership models with ULID primary keys.
"""
from datetime import datetime, timezone
from sqlalchemy import String, Boolean, DateTime, ForeignKey, Index, Enum as SQLEnum, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from agilepm.core.database.base import Base, TimestampMixin, generate_ulid
from agilepm.features.permissions.models import RoleType


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class User(Base, TimestampMixin):
    """
    User of the project-management application.

    ``system_role`` is the user's role at system scope (super_admin, admin, ...),
    null for users without one.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)

    system_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # Home department; division roles come from DepartmentMember rows
    department_id: Mapped[str | None] = mapped_column(String(26), nullable=True, index=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username!r})>"


class UserRoleAssignment(Base, TimestampMixin):
    """
    A role granted to a user at one scope, optionally tied to one resource
    and optionally limited in time.

    Examples:
    - role_type=project, role_name="developer", resource_type="project", resource_id=<project id>
    - role_type=division, role_name="division_head", valid_until=<end of acting period>
    """
    __tablename__ = "user_role_assignments"
    __table_args__ = (
        Index("idx_role_assign_resource", "resource_type", "resource_id"),
        Index("idx_role_assign_validity", "valid_from", "valid_until"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_type: Mapped[RoleType] = mapped_column(SQLEnum(RoleType), nullable=False, index=True)
    role_name: Mapped[str] = mapped_column(String(50), nullable=False)

    # Resource the role applies to: department, team or project (null = everywhere)
    resource_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    assigned_by: Mapped[str] = mapped_column(String(26), ForeignKey("users.id"), nullable=False)

    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)  # null = no expiry

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def is_valid(self, now: datetime | None = None) -> bool:
        """Active and inside its validity window."""
        if not self.is_active:
            return False
        now = as_utc(now or datetime.now(timezone.utc))
        if self.valid_from is not None and now < as_utc(self.valid_from):
            return False
        if self.valid_until is not None and now > as_utc(self.valid_until):
            return False
        return True

    def __repr__(self) -> str:
        return (
            f"<UserRoleAssignment(user_id={self.user_id}, role={self.role_type.value}:{self.role_name}, "
            f"resource={self.resource_type}:{self.resource_id})>"
        )
