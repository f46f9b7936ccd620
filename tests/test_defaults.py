"""Tests for the default catalog and role matrix."""
import pytest

from agilepm.features.permissions.audit import AuditTrail
from agilepm.features.permissions.defaults import ALL_PERMISSION_CODES, seed_defaults
from agilepm.features.permissions.models import RoleType
from agilepm.features.permissions.schemas import AccessRequest, RoleRef


@pytest.mark.asyncio
async def test_seed_is_repeatable(db, catalog, ctx):
    created = await seed_defaults(db, ctx)
    assert created > 0
    assert len(await catalog.list_all()) == len(ALL_PERMISSION_CODES)
    assert (await AuditTrail(db).query(page_size=1)).total == created

    assert await seed_defaults(db, ctx) == 0


@pytest.mark.asyncio
async def test_seeded_conditional_rules(db, resolver, ctx):
    await seed_defaults(db, ctx)
    qa = {RoleRef(role_type=RoleType.PROJECT, role_name="qa_tester")}
    developer = {RoleRef(role_type=RoleType.PROJECT, role_name="developer")}

    qa_fields = AccessRequest(user_id="qa-1", touched_fields=["qa_status", "test_notes"])
    title = AccessRequest(user_id="qa-1", touched_fields=["title"])
    assert (await resolver.resolve(qa, "edit_task_details", qa_fields)).allowed is True
    assert (await resolver.resolve(qa, "edit_task_details", title)).allowed is False

    own = AccessRequest(user_id="dev-1", resource_owner_id="dev-1")
    other = AccessRequest(user_id="dev-1", resource_owner_id="dev-2")
    assert (await resolver.resolve(developer, "change_task_status", own)).allowed is True
    assert (await resolver.resolve(developer, "change_task_status", other)).allowed is False

    report = await resolver.resolve(developer, "view_report", own)
    assert report.allowed is True
    assert report.restriction == {"filter": {"basic_reports_only": True}}


@pytest.mark.asyncio
async def test_super_admin_holds_everything(db, resolver, ctx):
    await seed_defaults(db, ctx)
    effective = await resolver.effective_permissions({RoleRef(role_type=RoleType.SYSTEM, role_name="super_admin")})
    assert {e.permission_code for e in effective} == set(ALL_PERMISSION_CODES)
