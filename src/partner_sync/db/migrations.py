"""
Schema migration runner.

Tracks a monotonically increasing version in the singleton schema_info row
and applies each pending step in order. Safe to run on every boot.

Example:
    from partner_sync.db.connection import get_engine
    from partner_sync.db.migrations import apply_migrations

    applied = await apply_migrations(get_engine())
"""

import logging
from collections.abc import Callable

from sqlalchemy import Connection, insert, inspect, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from partner_sync.models import (
    SINGLETON_ID,
    Base,
    PortalSettingsModel,
    SchemaInfoModel,
    SyncLockModel,
    SyncScheduleModel,
    utcnow,
)
from partner_sync.settings import get_settings

logger = logging.getLogger(__name__)


def _create_tables(conn: Connection) -> None:
    Base.metadata.create_all(conn, checkfirst=True)


def _seed_singletons(conn: Connection) -> None:
    """Insert the portal_settings, sync_schedule and sync_lock rows if missing."""
    settings = get_settings()

    if conn.execute(select(PortalSettingsModel.id)).first() is None:
        conn.execute(
            insert(PortalSettingsModel).values(
                id=SINGLETON_ID,
                tier_requirements=dict(settings.default_tier_requirements),
                created_at=utcnow(),
                updated_at=utcnow(),
            )
        )

    if conn.execute(select(SyncScheduleModel.id)).first() is None:
        conn.execute(
            insert(SyncScheduleModel).values(
                id=SINGLETON_ID,
                enabled=False,
                interval_hours=24,
                sync_types=["users", "groups", "courses", "enrollments"],
                sync_mode="incremental",
                created_at=utcnow(),
                updated_at=utcnow(),
            )
        )

    if conn.execute(select(SyncLockModel.id)).first() is None:
        conn.execute(insert(SyncLockModel).values(id=SINGLETON_ID, status="idle"))


# Ordered steps; the schema version is the number of steps applied.
MIGRATIONS: list[tuple[str, Callable[[Connection], None]]] = [
    ("create_tables", _create_tables),
    ("seed_singletons", _seed_singletons),
]

SCHEMA_VERSION = len(MIGRATIONS)


def _ensure_version_table(conn: Connection) -> None:
    if not inspect(conn).has_table(SchemaInfoModel.__tablename__):
        SchemaInfoModel.__table__.create(conn)
    if conn.execute(select(SchemaInfoModel.id)).first() is None:
        conn.execute(insert(SchemaInfoModel).values(id=SINGLETON_ID, version=0))


def _get_current_version(conn: Connection) -> int:
    return conn.execute(
        select(SchemaInfoModel.version).where(SchemaInfoModel.id == SINGLETON_ID)
    ).scalar_one()


def _set_version(conn: Connection, version: int) -> None:
    conn.execute(
        update(SchemaInfoModel)
        .where(SchemaInfoModel.id == SINGLETON_ID)
        .values(version=version, updated_at=utcnow())
    )


async def get_schema_version(engine: AsyncEngine) -> int:
    """Return the applied schema version (0 for an empty database)."""
    async with engine.begin() as conn:
        await conn.run_sync(_ensure_version_table)
        return await conn.run_sync(_get_current_version)


async def apply_migrations(engine: AsyncEngine) -> list[str]:
    """
    Apply all pending migration steps in order.

    Each step runs in its own transaction together with the version bump,
    so a failed step leaves the version at the last completed step.

    Args:
        engine: Database engine

    Returns:
        Names of the steps applied (empty when the schema is current)

    Raises:
        RuntimeError: If the database reports a version newer than this code knows
    """
    current = await get_schema_version(engine)
    logger.info("Current schema version: %d", current)

    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Database schema version {current} is newer than supported version "
            f"{SCHEMA_VERSION}"
        )

    applied: list[str] = []
    for version, (name, step) in enumerate(MIGRATIONS[current:], start=current + 1):
        async with engine.begin() as conn:
            await conn.run_sync(step)
            await conn.run_sync(_set_version, version)
        applied.append(name)
        logger.info("Applied migration %d: %s", version, name)

    if not applied:
        logger.info("No pending migrations")

    return applied
