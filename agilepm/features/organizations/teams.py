"""
Team management: teams, their department, lead and members.
"""
from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core.exceptions import NotFoundError, ValidationError
from agilepm.features.organizations.models import Department, Team, TeamMember
from agilepm.features.organizations.schemas import TeamCreate
from agilepm.utils import get_logger


log = get_logger(__name__)


class TeamService:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, team_id: str) -> Team:
        team = await self.db.get(Team, team_id)
        if team is None:
            raise NotFoundError(f"Team {team_id} not found")
        return team

    async def create_team(self, data: TeamCreate) -> Team:
        """
        Raises:
            NotFoundError: if the department is given but does not exist
        """
        if data.department_id is not None and await self.db.get(Department, data.department_id) is None:
            raise NotFoundError(f"Department {data.department_id} not found")

        team = Team(**data.model_dump())
        self.db.add(team)
        await self.db.commit()
        await self.db.refresh(team)
        log.info(f"Created team {team.name!r} in department {team.department_id}")
        return team

    async def list_for_department(self, department_id: str | None) -> Sequence[Team]:
        """Teams of a department; None lists unassigned teams."""
        if department_id is None:
            condition = Team.department_id.is_(None)
        else:
            condition = Team.department_id == department_id
        result = await self.db.execute(select(Team).where(condition).order_by(Team.name))
        return result.scalars().all()

    async def member_count(self, team_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(TeamMember)
            .where(TeamMember.team_id == team_id, TeamMember.is_active.is_(True))
        )
        return result.scalar_one()

    async def add_member(self, team_id: str, user_id: str, role: str = "member") -> TeamMember:
        """
        Add a user to a team with a team role, or update the role of an
        existing member.

        Raises:
            ValidationError: if the team is full
        """
        team = await self.get(team_id)
        result = await self.db.execute(
            select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
        )
        member = result.scalar_one_or_none()

        joining = member is None or not member.is_active
        if joining and team.max_members is not None and await self.member_count(team_id) >= team.max_members:
            raise ValidationError(f"Team {team.name!r} already has {team.max_members} members")

        if member is None:
            member = TeamMember(team_id=team_id, user_id=user_id, role=role)
            self.db.add(member)
        else:
            member.role = role
            member.is_active = True
        await self.db.commit()
        await self.db.refresh(member)
        return member

    async def remove_member(self, team_id: str, user_id: str) -> None:
        result = await self.db.execute(
            select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
        )
        member = result.scalar_one_or_none()
        if member is None or not member.is_active:
            raise NotFoundError(f"User {user_id} is not a member of team {team_id}")
        member.is_active = False
        await self.db.commit()
