# seed.py — Idempotent bootstrap data: regions, reference catalogs,
# permission catalog, default company roles and the system administrator.
#
#   python seed.py
import os
import asyncio
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from auth import AuthService
from database import get_db_context, init_db, close_db
from models import Region, ProjectStatus, ProjectType, User, UserStatus
from reference_service import DEFAULT_REGIONS, DEFAULT_PROJECT_STATUSES, DEFAULT_PROJECT_TYPES
from role_service import ensure_default_roles

logger = logging.getLogger("projectdesk.seed")

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@projectdesk.io")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "ChangeMe123!")


async def _ensure_named(db: AsyncSession, model, names) -> int:
    existing = set((await db.execute(select(model.name))).scalars().all())
    created = 0
    for name in names:
        if name not in existing:
            db.add(model(name=name))
            created += 1
    await db.flush()
    return created


async def seed_database(db: AsyncSession) -> User:
    created_regions = await _ensure_named(db, Region, DEFAULT_REGIONS)
    await _ensure_named(db, ProjectStatus, DEFAULT_PROJECT_STATUSES)
    await _ensure_named(db, ProjectType, DEFAULT_PROJECT_TYPES)
    await db.commit()
    logger.info(f"Regions ready ({created_regions} new)")

    await ensure_default_roles(db)

    admin = (await db.execute(select(User).where(User.email == ADMIN_EMAIL))).scalar_one_or_none()
    if admin is None:
        first_region = (await db.execute(
            select(Region.id).order_by(Region.id).limit(1)
        )).scalar_one_or_none()
        admin = User(
            email=ADMIN_EMAIL,
            password_hash=AuthService.hash_password(ADMIN_PASSWORD),
            full_name="System Administrator",
            is_admin=True,
            status=UserStatus.ACTIVE,
            region_id=first_region,
        )
        db.add(admin)
        await db.commit()
        await db.refresh(admin)
        logger.info(f"Admin user created: {admin.email} (id={admin.id})")
    else:
        logger.info(f"Admin user already present: {admin.email}")
    return admin


async def main() -> None:
    await init_db()
    try:
        async with get_db_context() as db:
            await seed_database(db)
    finally:
        await close_db()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    asyncio.run(main())
