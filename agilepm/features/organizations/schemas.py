"""
Pydantic schemas for department and team requests.
"""
from pydantic import BaseModel, Field


class DepartmentCreate(BaseModel):
    """Schema for creating a department."""
    name: str = Field(..., min_length=2, max_length=100)
    code: str = Field(..., min_length=1, max_length=20, pattern="^[A-Za-z0-9]+$", description="Alphanumeric department code")
    description: str | None = Field(None, max_length=1000)
    parent_id: str | None = None
    head_user_id: str | None = None
    sort_order: int = 0


class TeamCreate(BaseModel):
    """Schema for creating a team."""
    name: str = Field(..., min_length=2, max_length=100)
    description: str | None = Field(None, max_length=1000)
    department_id: str | None = None
    lead_user_id: str | None = None
    color: str | None = Field("#3B82F6", pattern="^#[0-9A-Fa-f]{6}$")
    max_members: int | None = Field(None, ge=1)
