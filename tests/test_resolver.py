"""Tests for layered permission resolution."""
from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core import config
from agilepm.core.exceptions import TransientStorageError, UnknownPermissionError
from agilepm.features.permissions.models import PermissionCategory, RoleType
from agilepm.features.permissions.schemas import AccessRequest, RoleRef


def role(role_type, role_name):
    return RoleRef(role_type=role_type, role_name=role_name)


def task_request(owner=None, **kwargs):
    return AccessRequest(user_id="dev-1", resource_type="task", resource_id="t-1", resource_owner_id=owner, **kwargs)


class TestDefaultDeny:

    @pytest.mark.asyncio
    async def test_no_roles(self, resolver, task_permissions):
        result = await resolver.resolve(set(), "task.edit", task_request())
        assert result.allowed is False
        assert result.reason == "no_assignment"

    @pytest.mark.asyncio
    async def test_role_without_assignment(self, resolver, role_map, ctx, task_permissions):
        await role_map.assign(RoleType.TEAM, "member", "task.view", ctx)
        result = await resolver.resolve({role(RoleType.TEAM, "member")}, "task.edit", task_request())
        assert result.allowed is False

    @pytest.mark.asyncio
    async def test_unknown_permission(self, resolver):
        result = await resolver.resolve({role(RoleType.SYSTEM, "admin")}, "nope", task_request())
        assert result.allowed is False
        assert result.reason == "unknown_permission"
        assert result.error

        with pytest.raises(UnknownPermissionError):
            await resolver.resolve_or_raise({role(RoleType.SYSTEM, "admin")}, "nope", task_request())

    @pytest.mark.asyncio
    async def test_inactive_permission_denies(self, resolver, role_map, catalog, ctx, task_permissions):
        await role_map.assign(RoleType.SYSTEM, "admin", "task.delete", ctx)
        await catalog.deactivate("task.delete")

        result = await resolver.resolve({role(RoleType.SYSTEM, "admin")}, "task.delete", task_request())
        assert result.allowed is False
        assert result.reason == "unknown_permission"


class TestLayering:

    @pytest.mark.asyncio
    async def test_most_specific_scope_wins(self, resolver, role_map, ctx, task_permissions):
        """A conditional project grant decides even when a system grant is unconditional."""
        await role_map.assign(RoleType.SYSTEM, "admin", "task.edit", ctx)
        await role_map.assign(RoleType.PROJECT, "developer", "task.edit", ctx, condition_type="own_only")
        roles = {role(RoleType.SYSTEM, "admin"), role(RoleType.PROJECT, "developer")}

        denied = await resolver.resolve(roles, "task.edit", task_request(owner="someone-else"))
        assert denied.allowed is False
        assert denied.scope_matched == RoleType.PROJECT
        assert denied.reason == "condition_failed"

        allowed = await resolver.resolve(roles, "task.edit", task_request(owner="dev-1"))
        assert allowed.allowed is True
        assert allowed.scope_matched == RoleType.PROJECT

    @pytest.mark.asyncio
    async def test_precedence_order(self, resolver, role_map, ctx, task_permissions):
        for role_type in (RoleType.SYSTEM, RoleType.DIVISION, RoleType.TEAM):
            await role_map.assign(role_type, "r", "task.view", ctx)

        roles = {role(RoleType.SYSTEM, "r"), role(RoleType.DIVISION, "r")}
        assert (await resolver.resolve(roles, "task.view", task_request())).scope_matched == RoleType.DIVISION

        roles.add(role(RoleType.TEAM, "r"))
        assert (await resolver.resolve(roles, "task.view", task_request())).scope_matched == RoleType.TEAM

    @pytest.mark.asyncio
    async def test_unconditional_beats_conditional_in_same_scope(self, resolver, role_map, ctx, task_permissions):
        await role_map.assign(RoleType.TEAM, "a_member", "task.edit", ctx, condition_type="own_only")
        await role_map.assign(RoleType.TEAM, "lead", "task.edit", ctx)
        roles = {role(RoleType.TEAM, "a_member"), role(RoleType.TEAM, "lead")}

        result = await resolver.resolve(roles, "task.edit", task_request(owner="someone-else"))
        assert result.allowed is True
        assert result.role_name == "lead"
        assert result.conditional is False

    @pytest.mark.asyncio
    async def test_resolution_is_idempotent(self, resolver, role_map, ctx, task_permissions):
        await role_map.assign(RoleType.TEAM, "member", "task.edit", ctx, condition_type="own_only")
        roles = {role(RoleType.TEAM, "member")}
        first = await resolver.resolve(roles, "task.edit", task_request(owner="dev-1"))
        second = await resolver.resolve(roles, "task.edit", task_request(owner="dev-1"))
        assert first == second


class TestTaskEditScenario:

    @pytest.mark.asyncio
    async def test_team_developer_own_only(self, resolver, role_map, catalog, ctx):
        """Project owner holds task.edit outright; team developer only on own tasks."""
        await catalog.register("task.edit", "Edit task", PermissionCategory.PROJECT)
        await role_map.assign(RoleType.PROJECT, "owner", "task.edit", ctx)
        await role_map.assign(RoleType.TEAM, "developer", "task.edit", ctx, condition_type="own_only")
        developer = {role(RoleType.TEAM, "developer")}

        not_own = await resolver.resolve(developer, "task.edit", task_request(owner="other-user"))
        assert not_own.allowed is False
        assert not_own.scope_matched == RoleType.TEAM
        assert not_own.conditional is True
        assert not_own.condition_type == "own_only"

        own = await resolver.resolve(developer, "task.edit", task_request(owner="dev-1"))
        assert own.allowed is True

        owner = await resolver.resolve({role(RoleType.PROJECT, "owner")}, "task.edit", task_request(owner="x"))
        assert owner.allowed is True
        assert owner.conditional is False


class TestConditionOutcomes:

    @pytest.mark.asyncio
    async def test_unknown_condition_fails_closed(self, resolver, role_map, ctx, task_permissions):
        await role_map.assign(RoleType.TEAM, "member", "task.edit", ctx, condition_type="moon_phase")
        result = await resolver.resolve({role(RoleType.TEAM, "member")}, "task.edit", task_request(owner="dev-1"))

        assert result.allowed is False
        assert result.reason == "unknown_condition"
        assert "moon_phase" in result.error

    @pytest.mark.asyncio
    async def test_partial_carries_restriction(self, resolver, role_map, ctx, task_permissions):
        config = {"filter": {"summary_only": True}}
        await role_map.assign(RoleType.DIVISION, "division_viewer", "task.view", ctx,
                              condition_type="partial", condition_config=config)
        result = await resolver.resolve({role(RoleType.DIVISION, "division_viewer")}, "task.view", task_request())

        assert result.allowed is True
        assert result.restriction == config

    @pytest.mark.asyncio
    async def test_time_window(self, resolver, role_map, ctx, task_permissions):
        await role_map.assign(RoleType.TEAM, "member", "task.view", ctx,
                              condition_type="time_between", condition_config={"start": "09:00", "end": "17:00"})
        roles = {role(RoleType.TEAM, "member")}

        office = await resolver.resolve(roles, "task.view", task_request(requested_at=datetime(2024, 1, 2, 11, 0)))
        night = await resolver.resolve(roles, "task.view", task_request(requested_at=datetime(2024, 1, 2, 23, 0)))
        assert office.allowed is True
        assert night.allowed is False


class TestBatchQueries:

    @pytest.mark.asyncio
    async def test_check_many(self, resolver, role_map, ctx, task_permissions):
        await role_map.assign(RoleType.TEAM, "member", "task.view", ctx)
        results = await resolver.check_many({role(RoleType.TEAM, "member")}, ["task.view", "task.delete"], task_request())

        assert results["task.view"].allowed is True
        assert results["task.delete"].allowed is False

    @pytest.mark.asyncio
    async def test_effective_permissions(self, resolver, role_map, catalog, ctx, task_permissions):
        await role_map.assign(RoleType.SYSTEM, "admin", "task.view", ctx)
        await role_map.assign(RoleType.TEAM, "member", "task.view", ctx)
        await role_map.assign(RoleType.TEAM, "member", "task.edit", ctx, condition_type="own_only")
        await role_map.assign(RoleType.TEAM, "member", "task.delete", ctx)
        await catalog.deactivate("task.delete")

        effective = await resolver.effective_permissions(
            {role(RoleType.SYSTEM, "admin"), role(RoleType.TEAM, "member")}
        )

        assert [e.permission_code for e in effective] == ["task.edit", "task.view"]
        edit, view = effective
        assert edit.conditional is True and edit.condition_type == "own_only"
        assert view.scope == RoleType.TEAM

    @pytest.mark.asyncio
    async def test_effective_permissions_without_roles(self, resolver):
        assert await resolver.effective_permissions(set()) == []


class TestTransientFailures:

    @staticmethod
    def fail_calls(monkeypatch, failing):
        """Make the listed db.execute calls (1-based) raise a dropped-connection error."""
        monkeypatch.setattr(config, "STORAGE_RETRY_BASE_DELAY", 0)
        execute = AsyncSession.execute
        counter = {"execute": 0, "rollback": 0}

        async def flaky_execute(self, *args, **kwargs):
            counter["execute"] += 1
            if counter["execute"] in failing:
                raise OperationalError("SELECT ...", {}, Exception("server closed the connection unexpectedly"))
            return await execute(self, *args, **kwargs)

        rollback = AsyncSession.rollback

        async def counting_rollback(self):
            counter["rollback"] += 1
            await rollback(self)

        monkeypatch.setattr(AsyncSession, "execute", flaky_execute)
        monkeypatch.setattr(AsyncSession, "rollback", counting_rollback)
        return counter

    @pytest.mark.asyncio
    async def test_assignment_load_recovers(self, resolver, role_map, ctx, task_permissions, monkeypatch):
        """A failed read is rolled back and the next attempt resolves."""
        await role_map.assign(RoleType.TEAM, "member", "task.edit", ctx)
        # call 1 looks up the permission, call 2 loads the assignments
        counter = self.fail_calls(monkeypatch, failing={2})

        result = await resolver.resolve({role(RoleType.TEAM, "member")}, "task.edit", task_request())

        assert result.allowed is True
        assert result.scope_matched == RoleType.TEAM
        assert counter["rollback"] == 1
        assert counter["execute"] == 3

    @pytest.mark.asyncio
    async def test_effective_permissions_recover(self, resolver, role_map, ctx, task_permissions, monkeypatch):
        await role_map.assign(RoleType.TEAM, "member", "task.view", ctx)
        counter = self.fail_calls(monkeypatch, failing={1})

        effective = await resolver.effective_permissions({role(RoleType.TEAM, "member")})

        assert [p.permission_code for p in effective] == ["task.view"]
        assert counter["rollback"] == 1

    @pytest.mark.asyncio
    async def test_persistent_failure_gives_up(self, resolver, role_map, ctx, task_permissions, monkeypatch):
        await role_map.assign(RoleType.TEAM, "member", "task.edit", ctx)
        monkeypatch.setattr(config, "STORAGE_RETRY_ATTEMPTS", 2)
        self.fail_calls(monkeypatch, failing={1, 2})

        with pytest.raises(TransientStorageError):
            await resolver.resolve({role(RoleType.TEAM, "member")}, "task.edit", task_request())
