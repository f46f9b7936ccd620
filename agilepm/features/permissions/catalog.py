"""
Permission catalog: the set of permission codes known to the system.
"""
from typing import Optional, Sequence

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from agilepm.core.exceptions import DuplicateCodeError, NotFoundError, UnknownPermissionError, ValidationError
from agilepm.features.permissions.models import Permission, PermissionCategory
from agilepm.features.permissions.schemas import PermissionCreate
from agilepm.utils import get_logger


log = get_logger(__name__)


def validation_message(error: PydanticValidationError) -> str:
    """First error of a pydantic failure on one line."""
    first = error.errors()[0]
    field = ".".join(str(part) for part in first["loc"])
    return f"{field}: {first['msg']}" if field else first["msg"]


def parse_category(category: PermissionCategory | str) -> PermissionCategory:
    try:
        return PermissionCategory(category)
    except ValueError:
        raise ValidationError(f"Unknown permission category {category!r}")


class PermissionCatalog:
    """
    Registers, looks up and retires permission codes.

    Usage:
        catalog = PermissionCatalog(db)
        await catalog.register("task.edit", "Edit task", PermissionCategory.PROJECT)
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def register(
        self,
        code: str,
        name: str,
        category: PermissionCategory | str = PermissionCategory.COMMON,
        description: Optional[str] = None,
    ) -> Permission:
        """
        Register a new permission code.

        Raises:
            DuplicateCodeError: if the code is already registered
            ValidationError: if the code, name or category is malformed
        """
        try:
            data = PermissionCreate(code=code, name=name, category=category, description=description)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid permission {code!r}: {validation_message(e)}") from e

        if await self._get(data.code) is not None:
            raise DuplicateCodeError(f"Permission code {data.code!r} already registered")

        permission = Permission(**data.model_dump())
        self.db.add(permission)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise DuplicateCodeError(f"Permission code {data.code!r} already registered")
        await self.db.refresh(permission)

        log.info(f"Registered permission {permission.code} ({permission.category.value})")
        return permission

    async def lookup(self, code: str) -> Permission:
        """
        Raises:
            NotFoundError: if no permission has this code
        """
        permission = await self._get(code)
        if permission is None:
            raise NotFoundError(f"Permission {code!r} not found")
        return permission

    async def require_active(self, code: str) -> Permission:
        """
        Return the permission if it exists and is active.

        Raises:
            UnknownPermissionError: if the code is absent or inactive
        """
        permission = await self._get(code)
        if permission is None:
            raise UnknownPermissionError(f"Unknown permission {code!r}")
        if not permission.is_active:
            raise UnknownPermissionError(f"Permission {code!r} is inactive")
        return permission

    async def list_by_category(self, category: PermissionCategory | str) -> Sequence[Permission]:
        """List permissions of one category, sorted by code."""
        stmt = (
            select(Permission)
            .where(Permission.category == parse_category(category))
            .order_by(Permission.code)
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def list_all(self, include_inactive: bool = False) -> Sequence[Permission]:
        stmt = select(Permission).order_by(Permission.code)
        if not include_inactive:
            stmt = stmt.where(Permission.is_active.is_(True))
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def deactivate(self, code: str) -> Permission:
        """Mark a permission inactive. It stays in the catalog for audit history."""
        return await self._set_active(code, False)

    async def activate(self, code: str) -> Permission:
        return await self._set_active(code, True)

    async def _set_active(self, code: str, active: bool) -> Permission:
        permission = await self.lookup(code)
        if permission.is_active != active:
            permission.is_active = active
            await self.db.commit()
            await self.db.refresh(permission)
            log.info(f"Permission {code} {'activated' if active else 'deactivated'}")
        return permission

    async def _get(self, code: str) -> Optional[Permission]:
        result = await self.db.execute(select(Permission).where(Permission.code == code))
        return result.scalar_one_or_none()
