"""
Sync lock and schedule.

One global lock (the sync_lock singleton row) serializes every sync run.
Taking it is a compare-and-swap UPDATE, so it holds across processes. A
run that finds the lock held gets SyncConflictError; nothing is queued.
A running sync refreshes locked_at between phases, and only the run the
lock names can release it.
"""

import logging
import socket
from datetime import datetime, timedelta

from pydantic import BaseModel, Field
from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from partner_sync.lms.client import LmsApi
from partner_sync.models import (
    FULL_SYNC_ORDER,
    SINGLETON_ID,
    SyncLockModel,
    SyncLog,
    SyncLogModel,
    SyncMode,
    SyncSchedule,
    SyncScheduleModel,
    SyncStatus,
    SyncStatusInfo,
    SyncType,
    utcnow,
)
from partner_sync.services.sync_service import SyncResult, run_sync, start_sync_log
from partner_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class SyncConflictError(Exception):
    """Raised when a sync is requested while another one holds the lock."""

    def __init__(self, current_run: SyncLog | None = None):
        self.current_run = current_run
        detail = f" (run {current_run.id}, {current_run.sync_type})" if current_run else ""
        super().__init__(f"A sync is already running{detail}")


class ScheduleTickResult(BaseModel):
    ran: bool = False
    reason: str | None = None
    results: list[SyncResult] = Field(default_factory=list)
    next_scheduled_run: datetime | None = None


def _default_owner() -> str:
    return socket.gethostname()


# ============================================================================
# Lock
# ============================================================================


async def _ensure_lock_row(session: AsyncSession) -> None:
    if await session.get(SyncLockModel, SINGLETON_ID) is None:
        await session.execute(
            insert(SyncLockModel).values(id=SINGLETON_ID, status=SyncStatus.IDLE.value)
        )


async def _load_lock(session: AsyncSession) -> SyncLockModel:
    await _ensure_lock_row(session)
    lock = await session.get(SyncLockModel, SINGLETON_ID, populate_existing=True)
    if lock is None:
        raise RuntimeError("sync_lock row is missing")
    return lock


def _is_stale(lock: SyncLockModel, settings: Settings, now: datetime | None = None) -> bool:
    if lock.status != SyncStatus.RUNNING.value or lock.locked_at is None:
        return False
    return lock.locked_at < (now or utcnow()) - timedelta(minutes=settings.stale_lock_minutes)


async def _fail_running_logs(session: AsyncSession, reason: str) -> int:
    result = await session.execute(
        update(SyncLogModel)
        .where(SyncLogModel.status == SyncStatus.RUNNING.value)
        .values(status=SyncStatus.FAILED.value, completed_at=utcnow(), error_message=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def acquire_sync_lock(
    session: AsyncSession,
    sync_type: SyncType,
    owner: str | None = None,
    settings: Settings | None = None,
) -> bool:
    """
    Try to move the lock to 'running'.

    Succeeds when the lock is not running, or when it has been running for
    longer than ``stale_lock_minutes`` (the holder is presumed dead and its
    run is marked failed).

    Returns:
        True if this caller now holds the lock
    """
    settings = settings or get_settings()
    now = utcnow()
    stale_before = now - timedelta(minutes=settings.stale_lock_minutes)

    previous = await _load_lock(session)
    was_stale = _is_stale(previous, settings, now)

    result = await session.execute(
        update(SyncLockModel)
        .where(
            SyncLockModel.id == SINGLETON_ID,
            or_(
                SyncLockModel.status != SyncStatus.RUNNING.value,
                SyncLockModel.locked_at < stale_before,
            ),
        )
        .values(
            status=SyncStatus.RUNNING.value,
            sync_type=sync_type.value,
            sync_log_id=None,
            locked_at=now,
            owner=owner or _default_owner(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    if was_stale:
        logger.warning(
            "Reclaimed stale sync lock held since %s by %s", previous.locked_at, previous.owner
        )
        await _fail_running_logs(session, "Stale sync lock reclaimed")
    return True


async def release_sync_lock(session: AsyncSession, status: SyncStatus, log_id: int) -> bool:
    """
    Record run ``log_id``'s outcome on the lock, freeing it.

    Only the run that holds the lock can release it. A run whose lock was
    reclaimed or reset leaves the lock alone and gets False.
    """
    result = await session.execute(
        update(SyncLockModel)
        .where(
            SyncLockModel.id == SINGLETON_ID,
            SyncLockModel.sync_log_id == log_id,
            SyncLockModel.status == SyncStatus.RUNNING.value,
        )
        .values(status=status.value)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.warning("Sync %d no longer holds the sync lock; not releasing it", log_id)
        return False
    return True


async def _current_run(session: AsyncSession, lock: SyncLockModel) -> SyncLog | None:
    if lock.sync_log_id is not None:
        log = await session.get(SyncLogModel, lock.sync_log_id)
        if log is not None:
            return SyncLog.model_validate(log)

    result = await session.execute(
        select(SyncLogModel)
        .where(SyncLogModel.status == SyncStatus.RUNNING.value)
        .order_by(SyncLogModel.started_at.desc())
        .limit(1)
    )
    log = result.scalar_one_or_none()
    return SyncLog.model_validate(log) if log else None


async def get_sync_status(
    session: AsyncSession, settings: Settings | None = None
) -> SyncStatusInfo:
    """Whether a sync holds the lock, and which run it is."""
    settings = settings or get_settings()
    lock = await _load_lock(session)
    locked = lock.status == SyncStatus.RUNNING.value

    return SyncStatusInfo(
        locked=locked,
        current_run=await _current_run(session, lock) if locked else None,
        locked_at=lock.locked_at if locked else None,
        sync_type=lock.sync_type if locked else None,
        owner=lock.owner if locked else None,
        stale=_is_stale(lock, settings),
    )


async def trigger_sync(
    session: AsyncSession,
    client: LmsApi,
    sync_type: SyncType = SyncType.FULL,
    mode: SyncMode = SyncMode.FULL,
    owner: str | None = None,
    settings: Settings | None = None,
) -> SyncResult:
    """
    Run a sync under the global lock.

    Args:
        session: Database session
        client: LMS API client
        sync_type: A single entity type or FULL
        mode: FULL or INCREMENTAL
        owner: Lock holder label (defaults to the host name)
        settings: Settings override

    Returns:
        SyncResult of the run

    Raises:
        SyncConflictError: If another sync holds the lock
        LmsApiError, LmsTransientError: If the run fails; the lock is released
            and the run recorded as failed first
    """
    settings = settings or get_settings()

    if not await acquire_sync_lock(session, sync_type, owner, settings):
        lock = await _load_lock(session)
        current = await _current_run(session, lock)
        await session.rollback()
        logger.info("Sync %s rejected: lock held", sync_type.value)
        raise SyncConflictError(current)

    log = await start_sync_log(session, sync_type, mode)
    log_id = log.id
    await session.execute(
        update(SyncLockModel)
        .where(SyncLockModel.id == SINGLETON_ID)
        .values(sync_log_id=log_id)
        .execution_options(synchronize_session=False)
    )

    try:
        result = await run_sync(session, client, sync_type, mode, settings, log=log)
    except Exception:
        await session.rollback()
        await release_sync_lock(session, SyncStatus.FAILED, log_id)
        await session.commit()
        raise

    await release_sync_lock(session, result.status, log_id)
    await session.commit()
    return result


async def reset_sync_lock(
    session: AsyncSession,
    reason: str = "manual reset",
    settings: Settings | None = None,
) -> SyncStatusInfo:
    """
    Force-clear the lock and fail any run still marked running.

    Does not check that the previous holder has stopped.
    """
    lock = await _load_lock(session)
    logger.warning(
        "Sync lock reset (%s); was %s since %s by %s",
        reason,
        lock.status,
        lock.locked_at,
        lock.owner,
    )

    failed = await _fail_running_logs(session, f"Sync reset: {reason}")
    await session.execute(
        update(SyncLockModel)
        .where(SyncLockModel.id == SINGLETON_ID)
        .values(status=SyncStatus.IDLE.value, sync_log_id=None, locked_at=None, owner=None)
        .execution_options(synchronize_session=False)
    )
    await session.flush()
    if failed:
        logger.warning("Marked %d running sync logs as failed", failed)
    return await get_sync_status(session, settings)


# ============================================================================
# Schedule
# ============================================================================


async def _load_schedule(session: AsyncSession) -> SyncScheduleModel:
    schedule = await session.get(SyncScheduleModel, SINGLETON_ID)
    if schedule is None:
        schedule = SyncScheduleModel(
            id=SINGLETON_ID,
            enabled=False,
            interval_hours=24,
            sync_types=["users", "groups", "courses", "enrollments"],
            sync_mode=SyncMode.INCREMENTAL.value,
        )
        session.add(schedule)
        await session.flush()
    return schedule


async def get_schedule(session: AsyncSession) -> SyncSchedule:
    return SyncSchedule.model_validate(await _load_schedule(session))


async def update_schedule(
    session: AsyncSession,
    enabled: bool | None = None,
    interval_hours: int | None = None,
    sync_types: list[SyncType] | None = None,
    sync_mode: SyncMode | None = None,
) -> SyncSchedule:
    """
    Change the scheduled sync configuration.

    Enabling the schedule, or changing the interval while enabled, sets the
    next run to now + interval. Disabling clears it.

    Raises:
        ValueError: If interval_hours < 1 or sync_types is empty
    """
    schedule = await _load_schedule(session)
    reschedule = False

    if interval_hours is not None:
        if interval_hours < 1:
            raise ValueError("interval_hours must be at least 1")
        reschedule = interval_hours != schedule.interval_hours
        schedule.interval_hours = interval_hours

    if sync_types is not None:
        if not sync_types:
            raise ValueError("sync_types cannot be empty")
        schedule.sync_types = [SyncType(t).value for t in sync_types]

    if sync_mode is not None:
        schedule.sync_mode = SyncMode(sync_mode).value

    if enabled is not None:
        reschedule = reschedule or (enabled and not schedule.enabled)
        schedule.enabled = enabled

    if not schedule.enabled:
        schedule.next_scheduled_run = None
    elif reschedule or schedule.next_scheduled_run is None:
        schedule.next_scheduled_run = utcnow() + timedelta(hours=schedule.interval_hours)

    await session.flush()
    logger.info(
        "Schedule updated: enabled=%s every %dh types=%s next=%s",
        schedule.enabled,
        schedule.interval_hours,
        schedule.sync_types,
        schedule.next_scheduled_run,
    )
    return SyncSchedule.model_validate(schedule)


def _scheduled_runs(sync_types: list[str]) -> list[SyncType]:
    """Configured types in dependency order; all of them collapse into one FULL run."""
    wanted = {SyncType(t) for t in sync_types}
    if SyncType.FULL in wanted or wanted >= set(FULL_SYNC_ORDER):
        return [SyncType.FULL]
    return [t for t in FULL_SYNC_ORDER if t in wanted]


async def schedule_tick(
    session: AsyncSession,
    client: LmsApi,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> ScheduleTickResult:
    """
    Run the scheduled sync if it is due.

    When due, the configured sync types run in dependency order and the
    next run moves to now + interval_hours. A tick that finds another sync
    running does nothing, so the next tick retries. A failed run stops the
    remaining types for this tick.
    """
    settings = settings or get_settings()
    now = now or utcnow()
    schedule = await _load_schedule(session)

    if not schedule.enabled:
        return ScheduleTickResult(reason="disabled")
    if schedule.next_scheduled_run is not None and schedule.next_scheduled_run > now:
        return ScheduleTickResult(
            reason="not due", next_scheduled_run=schedule.next_scheduled_run
        )

    runs = _scheduled_runs(schedule.sync_types)
    mode = SyncMode(schedule.sync_mode)
    interval = schedule.interval_hours
    tick = ScheduleTickResult(ran=True)
    logger.info("Scheduled sync due: %s (%s)", [t.value for t in runs], mode.value)

    for sync_type in runs:
        try:
            tick.results.append(
                await trigger_sync(session, client, sync_type, mode, "scheduler", settings)
            )
        except SyncConflictError:
            if not tick.results:
                return ScheduleTickResult(reason="sync already running")
            tick.reason = "sync already running"
            break
        except Exception as e:
            logger.error("Scheduled %s sync failed: %s", sync_type.value, e)
            tick.reason = f"{sync_type.value} failed: {e}"
            break

    schedule = await _load_schedule(session)
    schedule.last_scheduled_run = now
    schedule.next_scheduled_run = now + timedelta(hours=interval)
    await session.commit()

    tick.next_scheduled_run = schedule.next_scheduled_run
    return tick


async def cleanup_sync_logs(
    session: AsyncSession, keep_days: int = 30, now: datetime | None = None
) -> int:
    """Delete finished SyncLog rows older than ``keep_days``."""
    cutoff = (now or utcnow()) - timedelta(days=keep_days)
    result = await session.execute(
        delete(SyncLogModel)
        .where(
            SyncLogModel.started_at < cutoff,
            SyncLogModel.status != SyncStatus.RUNNING.value,
        )
        .execution_options(synchronize_session=False)
    )
    await session.flush()
    removed = result.rowcount or 0
    if removed:
        logger.info("Removed %d sync logs older than %d days", removed, keep_days)
    return removed
