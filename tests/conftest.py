"""
Shared fixtures: a fresh in-memory database per test and the services on top.
"""
import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from agilepm.core.database.base import Base
from agilepm.core.database.engine import build_engine, build_session_factory, import_models
from agilepm.features.permissions.catalog import PermissionCatalog
from agilepm.features.permissions.models import PermissionCategory
from agilepm.features.permissions.resolver import PermissionResolver
from agilepm.features.permissions.role_map import RolePermissionMap
from agilepm.features.permissions.schemas import AuditContext
from agilepm.features.users.memberships import RoleMembershipService
from agilepm.features.users.schemas import UserCreate


@pytest_asyncio.fixture
async def engine():
    engine = build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    import_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db(engine):
    async with build_session_factory(engine)() as session:
        yield session


@pytest.fixture
def ctx():
    """Audit context of the acting administrator"""
    return AuditContext(actor_id="01HADMIN00000000000000000", ip_address="10.0.0.1", user_agent="pytest")


@pytest.fixture
def catalog(db):
    return PermissionCatalog(db)


@pytest.fixture
def role_map(db):
    return RolePermissionMap(db)


@pytest.fixture
def resolver(db):
    return PermissionResolver(db)


@pytest.fixture
def memberships(db):
    return RoleMembershipService(db)


@pytest_asyncio.fixture
async def task_permissions(catalog):
    """The task permissions used across resolver scenarios"""
    return {
        "task.edit": await catalog.register("task.edit", "Edit task", PermissionCategory.TEAM),
        "task.view": await catalog.register("task.view", "View task", PermissionCategory.COMMON),
        "task.delete": await catalog.register("task.delete", "Delete task", PermissionCategory.TEAM),
    }


@pytest_asyncio.fixture
async def make_user(memberships):
    counter = {"n": 0}

    async def _make(system_role=None, username=None):
        counter["n"] += 1
        name = username or f"user{counter['n']}"
        return await memberships.create_user(
            UserCreate(username=name, email=f"{name}@agilepm.io", full_name=name.title(), system_role=system_role)
        )

    return _make
