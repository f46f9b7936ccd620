"""
Seed script to populate the default permission catalog and role matrix.

Run this script after database initialization to create:
- Default permissions per category
- Role-permission assignments for every system, division, team and project role
- Conditional rules (own_only, partial, qa_fields_only)

Usage:
    python -m scripts.seed_permissions
"""
import asyncio

from agilepm.core.database.engine import get_db, init_db
from agilepm.features.ai.service import AiSettingsService
from agilepm.features.permissions.defaults import DEFAULT_MATRIX, seed_defaults
from agilepm.features.permissions.schemas import AuditContext
from agilepm.utils import get_logger


log = get_logger(__name__)

SEED_ACTOR = "system"


async def main():
    log.info("Starting permission seeding...")

    log.info("Initializing database tables...")
    await init_db()

    async for db in get_db():
        try:
            context = AuditContext(actor_id=SEED_ACTOR, reason="default permission seed")
            created = await seed_defaults(db, context)
            await AiSettingsService(db).init_defaults()

            log.info(f"Permission seeding completed successfully ({created} new assignments)")
            for role_type, roles in DEFAULT_MATRIX.items():
                log.info(f"  - {role_type.value}: {', '.join(roles)}")
        except Exception as e:
            log.error(f"Error seeding permissions: {e}", exc_info=True)
            await db.rollback()
            raise

        break  # Only use first session


if __name__ == "__main__":
    asyncio.run(main())
