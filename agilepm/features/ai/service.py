"""
AI settings and usage metering.

Settings are text key/value rows; ``init_defaults`` seeds the missing ones.
The meter records every AI request and enforces the daily limits before a
new one is made.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core.exceptions import QuotaExceededError
from agilepm.features.ai.models import AiSetting, AiUsageLog, AiUsageStatus
from agilepm.features.ai.schemas import AiUsageCreate, DailyUsage
from agilepm.utils import get_logger


log = get_logger(__name__)

DEFAULT_SETTINGS: dict[str, tuple[str, str]] = {
    "ai_enabled": ("true", "Master toggle for AI features"),
    "daily_token_limit": ("100000", "Daily token limit across all users"),
    "user_daily_limit": ("100", "Daily request limit per user"),
    "cache_ttl_hours": ("24", "Cache expiration in hours"),
    "queue_concurrency": ("5", "Concurrent AI requests"),
}


class AiSettingsService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get(self, key: str) -> Optional[AiSetting]:
        result = await self.db.execute(select(AiSetting).where(AiSetting.setting_key == key))
        return result.scalar_one_or_none()

    async def get_value(self, key: str, default: Optional[str] = None) -> Optional[str]:
        setting = await self._get(key)
        if setting is not None:
            return setting.setting_value
        if default is not None:
            return default
        return DEFAULT_SETTINGS[key][0] if key in DEFAULT_SETTINGS else None

    async def get_int(self, key: str) -> int:
        return int(await self.get_value(key))

    async def get_bool(self, key: str) -> bool:
        return (await self.get_value(key, "false")).lower() == "true"

    async def set_value(
        self,
        key: str,
        value: str,
        description: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AiSetting:
        """Create or replace a setting."""
        setting = await self._get(key)
        if setting is None:
            setting = AiSetting(setting_key=key, setting_value=str(value))
            self.db.add(setting)
        setting.setting_value = str(value)
        if description is not None:
            setting.description = description
        setting.updated_by = user_id
        await self.db.commit()
        await self.db.refresh(setting)
        log.info(f"AI setting {key} set to {setting.setting_value!r} by {user_id}")
        return setting

    async def get_all(self) -> dict[str, str]:
        result = await self.db.execute(select(AiSetting).order_by(AiSetting.setting_key))
        return {s.setting_key: s.setting_value for s in result.scalars().all()}

    async def init_defaults(self) -> int:
        """Insert the default settings that are missing. Existing values are kept."""
        existing = set(await self.get_all())
        created = 0
        for key, (value, description) in DEFAULT_SETTINGS.items():
            if key in existing:
                continue
            self.db.add(AiSetting(setting_key=key, setting_value=value, description=description))
            created += 1
        if created:
            await self.db.commit()
            log.info(f"Initialized {created} AI settings")
        return created


class AiUsageMeter:
    """
    Usage:
        meter = AiUsageMeter(db)
        await meter.check_quota(user.id)
        ... call the model ...
        await meter.record(AiUsageCreate(user_id=user.id, feature="chat", request_tokens=120))
    """

    def __init__(self, db: AsyncSession, settings: Optional[AiSettingsService] = None):
        self.db = db
        self.settings = settings or AiSettingsService(db)

    async def record(self, data: AiUsageCreate, created_at: Optional[datetime] = None) -> AiUsageLog:
        total = data.total_tokens if data.total_tokens is not None else data.request_tokens + data.response_tokens
        entry = AiUsageLog(
            **data.model_dump(exclude={"total_tokens"}),
            total_tokens=total,
            created_at=created_at or datetime.now(timezone.utc),
        )
        self.db.add(entry)
        await self.db.commit()
        await self.db.refresh(entry)
        if entry.status != AiUsageStatus.SUCCESS:
            log.warning(f"AI {entry.feature} request for user {entry.user_id} ended with {entry.status.value}")
        return entry

    async def daily_usage(self, user_id: Optional[str] = None, day: Optional[date] = None) -> DailyUsage:
        """Requests and tokens for one UTC day; all users when ``user_id`` is None."""
        day = day or datetime.now(timezone.utc).date()
        start = datetime.combine(day, time.min, tzinfo=timezone.utc)
        end = start + timedelta(days=1)

        stmt = select(
            func.count(AiUsageLog.id),
            func.coalesce(func.sum(AiUsageLog.total_tokens), 0),
        ).where(AiUsageLog.created_at >= start, AiUsageLog.created_at < end)
        if user_id is not None:
            stmt = stmt.where(AiUsageLog.user_id == user_id)

        requests, tokens = (await self.db.execute(stmt)).one()
        return DailyUsage(day=day, user_id=user_id, requests=requests, tokens=tokens)

    async def check_quota(self, user_id: str, day: Optional[date] = None) -> None:
        """
        Raises:
            QuotaExceededError: if AI is disabled, the user reached the daily
                request limit, or all users together reached the token limit
        """
        if not await self.settings.get_bool("ai_enabled"):
            raise QuotaExceededError("AI features are disabled")

        user_limit = await self.settings.get_int("user_daily_limit")
        used = await self.daily_usage(user_id, day)
        if used.requests >= user_limit:
            log.info(f"User {user_id} hit the daily AI request limit ({user_limit})")
            raise QuotaExceededError(f"Daily AI request limit of {user_limit} reached")

        token_limit = await self.settings.get_int("daily_token_limit")
        overall = await self.daily_usage(None, day)
        if overall.tokens >= token_limit:
            log.warning(f"Daily AI token limit reached ({overall.tokens}/{token_limit})")
            raise QuotaExceededError(f"Daily AI token limit of {token_limit} reached")
