"""
Pydantic schemas for AI settings and usage.
"""
from datetime import date
from pydantic import BaseModel, Field

from agilepm.features.ai.models import AiUsageStatus


class AiUsageCreate(BaseModel):
    """One AI request to meter."""
    user_id: str
    feature: str = Field(..., min_length=1, max_length=50, description="generate_task, chat, insights, suggest_sprint, search")
    project_id: str | None = None
    task_id: str | None = None
    request_tokens: int = Field(0, ge=0)
    response_tokens: int = Field(0, ge=0)
    total_tokens: int | None = Field(None, ge=0, description="Defaults to request + response tokens")
    response_time_ms: int | None = Field(None, ge=0)
    status: AiUsageStatus = AiUsageStatus.SUCCESS
    error_message: str | None = None
    cached: bool = False


class DailyUsage(BaseModel):
    day: date
    user_id: str | None = None
    requests: int
    tokens: int
