"""
AI feature models: key/value settings and the usage log used for quotas.
"""
from enum import Enum
from sqlalchemy import String, Integer, Boolean, ForeignKey, Index, Text, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column

from agilepm.core.database.base import Base, CreatedAtMixin, TimestampMixin, generate_ulid


class AiUsageStatus(str, Enum):
    """Outcome of one AI request."""
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


class AiSetting(Base, TimestampMixin):
    """
    One AI configuration value. Values are stored as text and converted by
    the settings service.
    """
    __tablename__ = "ai_settings"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    setting_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    setting_value: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    def __repr__(self) -> str:
        return f"<AiSetting({self.setting_key}={self.setting_value!r})>"


class AiUsageLog(Base, CreatedAtMixin):
    """
    One AI request. Append-only; no updated_at.

    ``feature`` is the AI feature used: generate_task, chat, insights,
    suggest_sprint, search.
    """
    __tablename__ = "ai_usage_logs"
    __table_args__ = (
        Index("idx_ai_usage_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=generate_ulid)
    user_id: Mapped[str] = mapped_column(
        String(26), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    feature: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    # Projects and tasks live outside this service; kept as plain ids
    project_id: Mapped[str | None] = mapped_column(String(26), nullable=True)
    task_id: Mapped[str | None] = mapped_column(String(26), nullable=True)

    request_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    response_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    response_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    status: Mapped[AiUsageStatus] = mapped_column(
        SQLEnum(AiUsageStatus), default=AiUsageStatus.SUCCESS, nullable=False, index=True
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    cached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    def __repr__(self) -> str:
        return f"<AiUsageLog(user_id={self.user_id}, feature={self.feature}, tokens={self.total_tokens})>"
