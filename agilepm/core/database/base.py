"""
Declarative base, ULID keys and timestamp mixins shared by every model.
"""
from datetime import datetime
from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from ulid import ULID


def generate_ulid() -> str:
    """New 26-character ULID, used as the default for primary keys."""
    return str(ULID())


class Base(DeclarativeBase):
    """
    Declarative base of the access-control tables.

    Usage:
        class Team(Base, TimestampMixin):
            __tablename__ = "teams"
            id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)

    Models reference each other through plain foreign key columns only.
    Related rows are loaded with explicit queries in the feature services.
    """
    pass


class TimestampMixin:
    """created_at on insert, updated_at refreshed on every update."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class CreatedAtMixin:
    """Append-only tables: an indexed creation timestamp and nothing else."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
        index=True,
    )
