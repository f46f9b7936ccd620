"""Tests for the department hierarchy and teams."""
import pytest
import pytest_asyncio

from agilepm.core.exceptions import CycleDetectedError, DuplicateCodeError, NotFoundError, ValidationError
from agilepm.features.organizations.hierarchy import DepartmentService
from agilepm.features.organizations.schemas import DepartmentCreate, TeamCreate
from agilepm.features.organizations.teams import TeamService


@pytest.fixture
def departments(db):
    return DepartmentService(db)


@pytest.fixture
def teams(db):
    return TeamService(db)


@pytest_asyncio.fixture
async def tree(departments):
    """A -> B -> C, where C's parent is B and B's parent is A"""
    a = await departments.create_department(DepartmentCreate(name="A1", code="A"))
    b = await departments.create_department(DepartmentCreate(name="B1", code="B", parent_id=a.id))
    c = await departments.create_department(DepartmentCreate(name="C1", code="C", parent_id=b.id))
    return a, b, c


class TestHierarchyPath:

    @pytest.mark.asyncio
    async def test_root_to_leaf(self, departments, tree):
        a, b, c = tree
        assert await departments.get_hierarchy_path(c.id) == ["A1", "B1", "C1"]
        assert await departments.get_hierarchy_path(a.id) == ["A1"]
        assert await departments.format_hierarchy_path(c.id) == "A1 > B1 > C1"

    @pytest.mark.asyncio
    async def test_levels(self, tree):
        assert [d.level for d in tree] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_missing_department(self, departments):
        with pytest.raises(NotFoundError):
            await departments.get_hierarchy_path("missing")

    @pytest.mark.asyncio
    async def test_cycle_written_directly_is_detected(self, departments, tree, db):
        """A loop that bypassed the service still ends traversal with an error."""
        a, b, c = tree
        a.parent_id = c.id
        await db.commit()

        with pytest.raises(CycleDetectedError) as exc_info:
            await departments.get_hierarchy_path(c.id)
        assert exc_info.value.path == ["A1", "B1", "C1"]

        with pytest.raises(CycleDetectedError):
            await departments.get_ancestors(c.id)


class TestSetParent:

    @pytest.mark.asyncio
    async def test_rejects_cycle(self, departments, tree):
        """Making A a child of its own descendant is refused before anything is written."""
        a, b, c = tree
        with pytest.raises(CycleDetectedError):
            await departments.set_parent(a.id, c.id)
        with pytest.raises(CycleDetectedError):
            await departments.set_parent(a.id, a.id)

        assert (await departments.get(a.id)).parent_id is None
        assert await departments.get_hierarchy_path(c.id) == ["A1", "B1", "C1"]

    @pytest.mark.asyncio
    async def test_move_subtree_relevels(self, departments, tree):
        a, b, c = tree
        other = await departments.create_department(DepartmentCreate(name="Other", code="O"))

        await departments.set_parent(b.id, other.id)
        assert await departments.get_hierarchy_path(c.id) == ["Other", "B1", "C1"]

        await departments.set_parent(b.id, None)
        assert (await departments.get(b.id)).level == 0
        assert (await departments.get(c.id)).level == 1


class TestTraversal:

    @pytest.mark.asyncio
    async def test_ancestors_and_descendants(self, departments, tree):
        a, b, c = tree
        assert [d.code for d in await departments.get_ancestors(c.id)] == ["A", "B"]
        assert [d.code for d in await departments.get_descendants(a.id)] == ["B", "C"]
        assert await departments.get_descendants(c.id) == []

    @pytest.mark.asyncio
    async def test_duplicate_code(self, departments, tree):
        with pytest.raises(DuplicateCodeError):
            await departments.create_department(DepartmentCreate(name="Again", code="A"))


class TestTeams:

    @pytest.mark.asyncio
    async def test_create_in_missing_department(self, teams):
        with pytest.raises(NotFoundError):
            await teams.create_team(TeamCreate(name="Core", department_id="missing"))

    @pytest.mark.asyncio
    async def test_max_members(self, teams, tree):
        a, _, _ = tree
        team = await teams.create_team(TeamCreate(name="Core", department_id=a.id, max_members=2))

        await teams.add_member(team.id, "u1")
        await teams.add_member(team.id, "u2", role="team_lead")
        with pytest.raises(ValidationError):
            await teams.add_member(team.id, "u3")

        # Changing the role of an existing member is not a new join
        updated = await teams.add_member(team.id, "u1", role="scrum_master")
        assert updated.role == "scrum_master"

        await teams.remove_member(team.id, "u2")
        assert await teams.member_count(team.id) == 1
        await teams.add_member(team.id, "u3")

    @pytest.mark.asyncio
    async def test_list_for_department(self, teams, tree):
        a, _, _ = tree
        await teams.create_team(TeamCreate(name="Zeta", department_id=a.id))
        await teams.create_team(TeamCreate(name="Alpha", department_id=a.id))
        await teams.create_team(TeamCreate(name="Floating"))

        assert [t.name for t in await teams.list_for_department(a.id)] == ["Alpha", "Zeta"]
        assert [t.name for t in await teams.list_for_department(None)] == ["Floating"]

    @pytest.mark.asyncio
    async def test_remove_non_member(self, teams):
        team = await teams.create_team(TeamCreate(name="Core"))
        with pytest.raises(NotFoundError):
            await teams.remove_member(team.id, "nobody")
