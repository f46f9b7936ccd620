"""Tests for the FastAPI authorization dependency."""
import httpx
import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI, Request

from agilepm.core.database.engine import get_db
from agilepm.core.exceptions import RbacError, http_exception_for, NotFoundError, QuotaExceededError
from agilepm.features.permissions.dependencies import require_any_permission, require_permission
from agilepm.features.permissions.models import RoleType
from agilepm.features.permissions.schemas import Principal, ResolutionResult, RoleRef


PRINCIPALS = {
    "dev": Principal(user_id="dev-1", roles=frozenset({RoleRef(role_type=RoleType.TEAM, role_name="member")})),
    "guest": Principal(user_id="guest-1"),
}

TASK_OWNERS = {"t-1": "dev-1", "t-2": "someone-else"}


async def task_owner(request: Request, _db) -> str | None:
    return TASK_OWNERS.get(request.path_params["task_id"])


def build_app(db) -> FastAPI:
    app = FastAPI()

    @app.middleware("http")
    async def fake_authentication(request: Request, call_next):
        principal = PRINCIPALS.get(request.headers.get("X-User", ""))
        if principal is not None:
            request.state.principal = principal
        return await call_next(request)

    @app.put("/tasks/{task_id}")
    async def update_task(
        task_id: str,
        access: ResolutionResult = Depends(require_permission("task.edit", "task", "task_id", owner_lookup=task_owner)),
    ):
        return {"task_id": task_id, "scope": access.scope_matched}

    @app.get("/tasks")
    async def list_tasks(access: ResolutionResult = Depends(require_any_permission(["task.delete", "task.view"]))):
        return {"granted_by": access.permission_code}

    async def override_db():
        yield db

    app.dependency_overrides[get_db] = override_db
    return app


@pytest_asyncio.fixture
async def client(db, role_map, ctx, task_permissions):
    await role_map.assign(RoleType.TEAM, "member", "task.edit", ctx, condition_type="own_only")
    await role_map.assign(RoleType.TEAM, "member", "task.view", ctx)
    transport = httpx.ASGITransport(app=build_app(db))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestRequirePermission:

    @pytest.mark.asyncio
    async def test_without_principal(self, client):
        response = await client.put("/tasks/t-1")
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_own_task_allowed(self, client):
        response = await client.put("/tasks/t-1", headers={"X-User": "dev"})
        assert response.status_code == 200
        assert response.json() == {"task_id": "t-1", "scope": "team"}

    @pytest.mark.asyncio
    async def test_other_task_forbidden(self, client):
        response = await client.put("/tasks/t-2", headers={"X-User": "dev"})
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_principal_without_roles_forbidden(self, client):
        response = await client.put("/tasks/t-1", headers={"X-User": "guest"})
        assert response.status_code == 403


class TestRequireAnyPermission:

    @pytest.mark.asyncio
    async def test_first_allowed_code_wins(self, client):
        response = await client.get("/tasks", headers={"X-User": "dev"})
        assert response.status_code == 200
        assert response.json() == {"granted_by": "task.view"}

    @pytest.mark.asyncio
    async def test_none_allowed(self, client):
        response = await client.get("/tasks", headers={"X-User": "guest"})
        assert response.status_code == 403


class TestHttpMapping:

    def test_status_codes(self):
        assert http_exception_for(NotFoundError("x")).status_code == 404
        assert http_exception_for(QuotaExceededError("x")).status_code == 429
        assert http_exception_for(RbacError("x")).status_code == 500
