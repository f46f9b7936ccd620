"""
Pydantic schemas for users and role memberships.
"""
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field

from agilepm.features.permissions.models import RoleType


class UserCreate(BaseModel):
    """Schema for creating a new user."""
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    full_name: str = Field(..., min_length=1, max_length=255)
    system_role: str | None = Field(None, max_length=50)
    department_id: str | None = None


class ScopeContext(BaseModel):
    """Which department, team and project a request is about."""
    department_id: str | None = None
    team_id: str | None = None
    project_id: str | None = None


class RoleGrant(BaseModel):
    """Schema for granting a scoped role to a user."""
    user_id: str
    role_type: RoleType
    role_name: str = Field(..., min_length=1, max_length=50)
    resource_type: str | None = Field(None, description="department, team or project")
    resource_id: str | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = Field(None, description="Null means no expiry")
    notes: str | None = None
