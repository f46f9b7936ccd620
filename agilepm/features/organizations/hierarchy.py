"""
Department hierarchy: creation, re-parenting and traversal.

The parent chain must stay acyclic. Writes that would close a loop are
rejected, and traversal still stops with CycleDetectedError if a loop was
written some other way.
"""
from collections import deque
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core.exceptions import CycleDetectedError, DuplicateCodeError, NotFoundError
from agilepm.features.organizations.models import Department, DepartmentMember
from agilepm.features.organizations.schemas import DepartmentCreate
from agilepm.utils import get_logger


log = get_logger(__name__)


class DepartmentService:
    """
    Usage:
        departments = DepartmentService(db)
        it = await departments.create_department(DepartmentCreate(name="IT", code="IT"))
        await departments.get_hierarchy_path(it.id)  # ["IT"]
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, department_id: str) -> Department:
        department = await self.db.get(Department, department_id)
        if department is None:
            raise NotFoundError(f"Department {department_id} not found")
        return department

    async def create_department(self, data: DepartmentCreate) -> Department:
        """
        Raises:
            DuplicateCodeError: if the code is already used
            NotFoundError: if the parent does not exist
        """
        existing = await self.db.execute(select(Department).where(Department.code == data.code))
        if existing.scalar_one_or_none() is not None:
            raise DuplicateCodeError(f"Department code {data.code!r} already in use")

        level = 0
        if data.parent_id is not None:
            parent = await self.get(data.parent_id)
            level = parent.level + 1

        department = Department(**data.model_dump(), level=level)
        self.db.add(department)
        await self.db.commit()
        await self.db.refresh(department)
        log.info(f"Created department {department.code} at level {level}")
        return department

    async def set_parent(self, department_id: str, parent_id: Optional[str]) -> Department:
        """
        Move a department under a new parent (or to the root with None).

        Raises:
            NotFoundError: if either department does not exist
            CycleDetectedError: if the move would make the department its own ancestor
        """
        department = await self.get(department_id)

        if parent_id is not None:
            parent = await self.get(parent_id)
            # Walk up from the new parent; meeting the department means a loop
            chain = [department.name]
            seen: set[str] = set()
            current: Optional[Department] = parent
            while current is not None:
                if current.id == department_id or current.id in seen:
                    log.warning(f"Rejected moving {department.code} under {parent.code}: cycle")
                    raise CycleDetectedError(department_id, path=list(reversed(chain)))
                seen.add(current.id)
                chain.append(current.name)
                current = await self.db.get(Department, current.parent_id) if current.parent_id else None

        department.parent_id = parent_id
        await self._relevel(department)
        await self.db.commit()
        await self.db.refresh(department)
        return department

    async def get_hierarchy_path(self, department_id: str) -> list[str]:
        """
        Names from the root down to the department.

        Raises:
            NotFoundError: if the department does not exist
            CycleDetectedError: if the parent chain loops; ``path`` holds the
                names collected before the loop, root-most first
        """
        names: list[str] = []
        seen: set[str] = set()
        current: Optional[Department] = await self.get(department_id)

        while current is not None:
            if current.id in seen:
                log.error(f"Department hierarchy cycle at {current.id} while walking from {department_id}")
                raise CycleDetectedError(current.id, path=list(reversed(names)))
            seen.add(current.id)
            names.append(current.name)
            if current.parent_id is None:
                break
            # A dangling parent reference ends the path
            current = await self.db.get(Department, current.parent_id)

        return list(reversed(names))

    async def format_hierarchy_path(self, department_id: str, separator: str = " > ") -> str:
        return separator.join(await self.get_hierarchy_path(department_id))

    async def get_ancestors(self, department_id: str) -> list[Department]:
        """Ancestors root-first, excluding the department itself."""
        department = await self.get(department_id)
        ancestors: list[Department] = []
        seen = {department.id}
        parent_id = department.parent_id
        while parent_id is not None:
            if parent_id in seen:
                raise CycleDetectedError(parent_id, path=[a.name for a in reversed(ancestors)])
            parent = await self.db.get(Department, parent_id)
            if parent is None:
                break
            seen.add(parent.id)
            ancestors.append(parent)
            parent_id = parent.parent_id
        return list(reversed(ancestors))

    async def get_descendants(self, department_id: str) -> list[Department]:
        """All departments below this one, breadth-first."""
        await self.get(department_id)
        descendants: list[Department] = []
        seen = {department_id}
        queue = deque([department_id])
        while queue:
            children = await self.get_children(queue.popleft())
            for child in children:
                if child.id in seen:
                    continue
                seen.add(child.id)
                descendants.append(child)
                queue.append(child.id)
        return descendants

    async def get_children(self, department_id: str) -> Sequence[Department]:
        result = await self.db.execute(
            select(Department)
            .where(Department.parent_id == department_id)
            .order_by(Department.sort_order, Department.name)
        )
        return result.scalars().all()

    async def add_member(self, department_id: str, user_id: str, role: str) -> DepartmentMember:
        """Add a user to a department with a division role, or update the role."""
        await self.get(department_id)
        result = await self.db.execute(
            select(DepartmentMember).where(
                DepartmentMember.department_id == department_id,
                DepartmentMember.user_id == user_id,
            )
        )
        member = result.scalar_one_or_none()
        if member is None:
            member = DepartmentMember(department_id=department_id, user_id=user_id, role=role)
            self.db.add(member)
        else:
            member.role = role
            member.is_active = True
        await self.db.commit()
        await self.db.refresh(member)
        return member

    async def _relevel(self, department: Department) -> None:
        if department.parent_id is None:
            department.level = 0
        else:
            parent = await self.get(department.parent_id)
            department.level = parent.level + 1

        for child in await self.get_descendants(department.id):
            parent = await self.db.get(Department, child.parent_id)
            child.level = parent.level + 1 if parent else 0
