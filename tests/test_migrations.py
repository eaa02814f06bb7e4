"""
Tests for the schema migration runner.
"""

import pytest
from sqlalchemy import select, update

from partner_sync.db.connection import build_engine
from partner_sync.db.migrations import (
    MIGRATIONS,
    SCHEMA_VERSION,
    apply_migrations,
    get_schema_version,
)
from partner_sync.models import (
    PortalSettingsModel,
    SchemaInfoModel,
    SyncLockModel,
    SyncScheduleModel,
)


@pytest.fixture
def engine(tmp_path):
    return build_engine(f"sqlite+aiosqlite:///{tmp_path / 'migrate.db'}")


@pytest.mark.asyncio
async def test_fresh_database_gets_every_step(engine):
    assert await get_schema_version(engine) == 0

    applied = await apply_migrations(engine)

    assert applied == [name for name, _ in MIGRATIONS]
    assert await get_schema_version(engine) == SCHEMA_VERSION

    async with engine.connect() as conn:
        lock_status = (await conn.execute(select(SyncLockModel.status))).scalar_one()
        schedule_enabled = (await conn.execute(select(SyncScheduleModel.enabled))).scalar_one()
        tiers = (await conn.execute(select(PortalSettingsModel.tier_requirements))).scalar_one()

    assert lock_status == "idle"
    assert schedule_enabled is False
    assert tiers["Premier"] == 20
    await engine.dispose()


@pytest.mark.asyncio
async def test_migrations_are_idempotent(engine):
    await apply_migrations(engine)

    assert await apply_migrations(engine) == []
    assert await get_schema_version(engine) == SCHEMA_VERSION
    await engine.dispose()


@pytest.mark.asyncio
async def test_newer_database_is_refused(engine):
    await apply_migrations(engine)
    async with engine.begin() as conn:
        await conn.execute(update(SchemaInfoModel).values(version=SCHEMA_VERSION + 1))

    with pytest.raises(RuntimeError, match="newer than supported"):
        await apply_migrations(engine)
    await engine.dispose()
