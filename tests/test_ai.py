"""Tests for AI settings and usage metering."""
from datetime import datetime, timedelta, timezone

import pytest

from agilepm.core.exceptions import QuotaExceededError
from agilepm.features.ai.models import AiUsageStatus
from agilepm.features.ai.schemas import AiUsageCreate
from agilepm.features.ai.service import DEFAULT_SETTINGS, AiSettingsService, AiUsageMeter


@pytest.fixture
def settings(db):
    return AiSettingsService(db)


@pytest.fixture
def meter(db, settings):
    return AiUsageMeter(db, settings)


class TestSettings:

    @pytest.mark.asyncio
    async def test_init_defaults_once(self, settings):
        assert await settings.init_defaults() == len(DEFAULT_SETTINGS)
        assert await settings.init_defaults() == 0

        values = await settings.get_all()
        assert values["daily_token_limit"] == "100000"
        assert values["user_daily_limit"] == "100"

    @pytest.mark.asyncio
    async def test_init_keeps_existing_values(self, settings):
        await settings.set_value("user_daily_limit", "5", user_id="admin")
        await settings.init_defaults()
        assert await settings.get_value("user_daily_limit") == "5"

    @pytest.mark.asyncio
    async def test_get_value_fallbacks(self, settings):
        assert await settings.get_value("cache_ttl_hours") == "24"
        assert await settings.get_value("unknown_key") is None
        assert await settings.get_value("unknown_key", "x") == "x"

    @pytest.mark.asyncio
    async def test_set_value_overwrites(self, settings):
        await settings.set_value("ai_enabled", "false", "toggle")
        setting = await settings.set_value("ai_enabled", True)
        assert setting.setting_value == "True"
        assert setting.description == "toggle"
        assert await settings.get_bool("ai_enabled") is True


class TestUsage:

    @pytest.mark.asyncio
    async def test_record_totals_tokens(self, meter):
        entry = await meter.record(AiUsageCreate(user_id="u1", feature="chat", request_tokens=30, response_tokens=12))
        assert entry.total_tokens == 42
        assert entry.status == AiUsageStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_daily_usage_per_user_and_day(self, meter):
        now = datetime.now(timezone.utc)
        await meter.record(AiUsageCreate(user_id="u1", feature="chat", total_tokens=100), created_at=now)
        await meter.record(AiUsageCreate(user_id="u1", feature="search", total_tokens=50), created_at=now)
        await meter.record(AiUsageCreate(user_id="u2", feature="chat", total_tokens=10), created_at=now)
        await meter.record(
            AiUsageCreate(user_id="u1", feature="chat", total_tokens=999), created_at=now - timedelta(days=2)
        )

        mine = await meter.daily_usage("u1", now.date())
        everyone = await meter.daily_usage(None, now.date())
        assert (mine.requests, mine.tokens) == (2, 150)
        assert (everyone.requests, everyone.tokens) == (3, 160)


class TestQuota:

    @pytest.mark.asyncio
    async def test_user_request_limit(self, meter, settings):
        await settings.set_value("user_daily_limit", "2")
        await meter.check_quota("u1")

        for _ in range(2):
            await meter.record(AiUsageCreate(user_id="u1", feature="chat", total_tokens=1))
        with pytest.raises(QuotaExceededError):
            await meter.check_quota("u1")
        await meter.check_quota("u2")

    @pytest.mark.asyncio
    async def test_global_token_limit(self, meter, settings):
        await settings.set_value("daily_token_limit", "100")
        await meter.record(AiUsageCreate(user_id="u1", feature="insights", total_tokens=100))
        with pytest.raises(QuotaExceededError):
            await meter.check_quota("u2")

    @pytest.mark.asyncio
    async def test_disabled(self, meter, settings):
        await settings.set_value("ai_enabled", "false")
        with pytest.raises(QuotaExceededError):
            await meter.check_quota("u1")
