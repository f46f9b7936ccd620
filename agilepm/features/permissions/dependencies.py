"""
FastAPI dependencies for request authorization.

The authentication layer is expected to put a ``Principal`` on
``request.state.principal`` before these dependencies run.
"""
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core.database.engine import get_db
from agilepm.core.exceptions import RbacError, forbidden, http_exception_for, unauthorized
from agilepm.features.permissions.resolver import PermissionResolver
from agilepm.features.permissions.schemas import AccessRequest, Principal, ResolutionResult
from agilepm.utils import get_logger


log = get_logger(__name__)

# Returns the owner id of the resource addressed by the request, if any
OwnerLookup = Callable[[Request, AsyncSession], Awaitable[Optional[str]]]


def get_current_principal(request: Request) -> Principal:
    """
    Return the principal placed on the request by the authentication layer.

    Raises:
        HTTPException: 401 if the request is not authenticated
    """
    principal = getattr(request.state, "principal", None)
    if not isinstance(principal, Principal):
        raise unauthorized()
    return principal


async def _build_access_request(
    request: Request,
    db: AsyncSession,
    principal: Principal,
    resource_type: Optional[str],
    resource_id_param: Optional[str],
    owner_lookup: Optional[OwnerLookup],
) -> AccessRequest:
    resource_id = request.path_params.get(resource_id_param) if resource_id_param else None
    owner_id = await owner_lookup(request, db) if owner_lookup else None
    return AccessRequest(
        user_id=principal.user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        resource_owner_id=owner_id,
        ip_address=request.client.host if request.client else None,
        requested_at=datetime.now(),
    )


def require_permission(
    permission_code: str,
    resource_type: Optional[str] = None,
    resource_id_param: Optional[str] = None,
    owner_lookup: Optional[OwnerLookup] = None,
):
    """
    FastAPI dependency to require a specific permission.

    Usage:
        async def task_owner(request, db):
            task = await db.get(Task, request.path_params["task_id"])
            return task.assigned_to if task else None

        @router.put("/tasks/{task_id}")
        async def update_task(
            task_id: str,
            access: ResolutionResult = Depends(
                require_permission("edit_task", "task", "task_id", owner_lookup=task_owner)
            ),
        ):
            # access.restriction carries any partial-access payload
            ...

    Args:
        permission_code: Code to resolve
        resource_type: Resource type recorded in the access request
        resource_id_param: Path parameter holding the resource id
        owner_lookup: Coroutine returning the resource owner id (for own_only)

    Returns:
        Dependency function returning the ResolutionResult when allowed

    Raises:
        HTTPException: 401 without a principal, 403 if denied
    """
    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        principal: Principal = Depends(get_current_principal),
    ) -> ResolutionResult:
        try:
            access = await _build_access_request(
                request, db, principal, resource_type, resource_id_param, owner_lookup
            )
            result = await PermissionResolver(db).resolve(principal.roles, permission_code, access)
        except RbacError as e:
            raise http_exception_for(e)

        if not result.allowed:
            log.info(f"Denied {permission_code} for user {principal.user_id}: {result.reason}")
            raise forbidden(f"Permission denied: {permission_code}")
        return result

    return permission_dependency


def require_any_permission(
    permission_codes: List[str],
    resource_type: Optional[str] = None,
    resource_id_param: Optional[str] = None,
    owner_lookup: Optional[OwnerLookup] = None,
):
    """
    FastAPI dependency to require ANY of the specified permissions.

    Returns the first allowing ResolutionResult, in the order given.
    """
    async def permission_dependency(
        request: Request,
        db: AsyncSession = Depends(get_db),
        principal: Principal = Depends(get_current_principal),
    ) -> ResolutionResult:
        try:
            access = await _build_access_request(
                request, db, principal, resource_type, resource_id_param, owner_lookup
            )
            resolver = PermissionResolver(db)
            for code in permission_codes:
                result = await resolver.resolve(principal.roles, code, access)
                if result.allowed:
                    return result
        except RbacError as e:
            raise http_exception_for(e)

        raise forbidden(f"Permission denied: requires one of {permission_codes}")

    return permission_dependency
