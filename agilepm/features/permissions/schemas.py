"""
Pydantic schemas for the permission core.

Request and result models for the catalog, role-permission map, resolver
and audit trail.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator

from agilepm.features.permissions.models import AuditAction, PermissionCategory, RoleType


# ============================================================================
# Permission Schemas
# ============================================================================

class PermissionBase(BaseModel):
    """Base permission schema."""
    code: str = Field(..., min_length=1, max_length=100, description="Unique permission code")
    name: str = Field(..., min_length=1, max_length=255, description="Human readable name")
    category: PermissionCategory = Field(PermissionCategory.COMMON, description="Permission category")
    description: Optional[str] = Field(None, max_length=1000, description="Permission description")


class PermissionCreate(PermissionBase):
    """Schema for registering a new permission."""

    @field_validator('code')
    @classmethod
    def code_format(cls, v: str) -> str:
        """Validate permission code format."""
        if not v.replace('_', '').replace('.', '').replace(':', '').isalnum():
            raise ValueError('Permission code must contain only alphanumeric characters, underscores, dots, and colons')
        return v


# ============================================================================
# Role / Assignment Schemas
# ============================================================================

class RoleRef(BaseModel):
    """A role a user holds at one scope."""
    role_type: RoleType
    role_name: str = Field(..., min_length=1, max_length=50)

    model_config = ConfigDict(frozen=True)

    def __str__(self) -> str:
        return f"{self.role_type.value}:{self.role_name}"


class RoleAssignmentCreate(BaseModel):
    """Schema for assigning a permission to a role."""
    role_type: RoleType
    role_name: str = Field(..., min_length=1, max_length=50)
    permission_code: str = Field(..., min_length=1, max_length=100)
    condition_type: Optional[str] = Field(None, max_length=50, description="own_only, partial, qa_fields_only, ...")
    condition_config: Optional[Dict[str, Any]] = Field(None, description="Condition payload as JSON")

    @field_validator('role_name')
    @classmethod
    def role_name_format(cls, v: str) -> str:
        """Validate role name format."""
        if not v.replace('_', '').replace('-', '').isalnum():
            raise ValueError('Role name must contain only alphanumeric characters, underscores, and hyphens')
        return v


# ============================================================================
# Resolution Schemas
# ============================================================================

class AccessRequest(BaseModel):
    """
    Runtime context of one access check.

    ``resource_owner_id`` comes from the resource-ownership lookup of the
    caller; ``touched_fields`` lists the fields an update would change.
    """
    user_id: str
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    resource_owner_id: Optional[str] = None
    touched_fields: Optional[List[str]] = None
    ip_address: Optional[str] = None
    requested_at: Optional[datetime] = None


class ResolutionResult(BaseModel):
    """Outcome of resolving one permission code for one user."""
    allowed: bool
    permission_code: str
    scope_matched: Optional[RoleType] = None
    role_name: Optional[str] = None
    conditional: bool = False
    condition_type: Optional[str] = None
    restriction: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class EffectivePermission(BaseModel):
    """A permission code a user holds after layering."""
    permission_code: str
    scope: RoleType
    role_name: str
    conditional: bool
    condition_type: Optional[str] = None


# ============================================================================
# Audit Log Schemas
# ============================================================================

class AuditContext(BaseModel):
    """Who made a change, for whom, and from where."""
    actor_id: str
    target_user_id: Optional[str] = None
    reason: Optional[str] = None
    ip_address: Optional[str] = Field(None, max_length=45)
    user_agent: Optional[str] = None


class AuditLogResponse(BaseModel):
    """Schema for audit log response."""
    id: str
    user_id: str
    target_user_id: Optional[str]
    action: AuditAction
    role_type: str
    role_name: str
    permission_code: Optional[str]
    resource_type: Optional[str]
    resource_id: Optional[str]
    old_role: Optional[str]
    new_role: Optional[str]
    old_value: Optional[Dict[str, Any]]
    new_value: Optional[Dict[str, Any]]
    reason: Optional[str]
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLogListResponse(BaseModel):
    """Schema for paginated audit log list."""
    items: List[AuditLogResponse]
    total: int
    page: int
    page_size: int
    pages: int


# ============================================================================
# Principal
# ============================================================================

class Principal(BaseModel):
    """
    The authenticated caller as handed over by the authentication layer:
    a user id and the roles that user holds for the current request.
    """
    user_id: str
    roles: frozenset[RoleRef] = frozenset()

    model_config = ConfigDict(frozen=True)
