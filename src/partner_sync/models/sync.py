"""
Sync bookkeeping models: run log, schedule, global lock, portal settings
and schema version.

sync_schedule, sync_lock, portal_settings and schema_info are singleton
tables (one row, id=1).
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import JSON, Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, utcnow

SINGLETON_ID = 1


class SyncType(str, Enum):
    """Entity types a sync run can cover."""

    USERS = "users"
    GROUPS = "groups"
    MEMBERSHIPS = "memberships"
    COURSES = "courses"
    ENROLLMENTS = "enrollments"
    FULL = "full"


class SyncMode(str, Enum):
    """Full fetch or watermark-filtered fetch."""

    FULL = "full"
    INCREMENTAL = "incremental"


class SyncStatus(str, Enum):
    """Sync run / lock state."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Dependency order for a full run: enrollment rows need users and courses.
FULL_SYNC_ORDER: tuple[SyncType, ...] = (
    SyncType.USERS,
    SyncType.GROUPS,
    SyncType.MEMBERSHIPS,
    SyncType.COURSES,
    SyncType.ENROLLMENTS,
)


# ============================================================================
# Pydantic Models (for API/validation)
# ============================================================================


class SyncLog(BaseModel):
    """Audit record of one sync run."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_type: str
    sync_mode: str
    status: SyncStatus
    started_at: datetime
    completed_at: datetime | None = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_failed: int = 0
    error_message: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)


class SyncSchedule(BaseModel):
    """Scheduled sync configuration."""

    model_config = ConfigDict(from_attributes=True)

    enabled: bool = False
    interval_hours: int = Field(default=24, ge=1)
    sync_types: list[SyncType] = Field(
        default_factory=lambda: [
            SyncType.USERS,
            SyncType.GROUPS,
            SyncType.COURSES,
            SyncType.ENROLLMENTS,
        ]
    )
    sync_mode: SyncMode = SyncMode.INCREMENTAL
    last_scheduled_run: datetime | None = None
    next_scheduled_run: datetime | None = None


class SyncStatusInfo(BaseModel):
    """Lock state as exposed to the trigger surface."""

    locked: bool
    current_run: SyncLog | None = None
    locked_at: datetime | None = None
    sync_type: str | None = None
    owner: str | None = None
    stale: bool = False


# ============================================================================
# SQLAlchemy Models (for database)
# ============================================================================


class SyncLogModel(Base):
    """SQLAlchemy model for sync_logs table. Append-only, one row per run."""

    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sync_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    sync_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="full")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)


class SyncScheduleModel(Base, TimestampMixin):
    """SQLAlchemy model for sync_schedule singleton."""

    __tablename__ = "sync_schedule"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SINGLETON_ID)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    interval_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=24)
    sync_types: Mapped[list[str]] = mapped_column(
        JSON, nullable=False, default=lambda: ["users", "groups", "courses", "enrollments"]
    )
    sync_mode: Mapped[str] = mapped_column(String(20), nullable=False, default="incremental")
    last_scheduled_run: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_scheduled_run: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class SyncLockModel(Base):
    """
    SQLAlchemy model for sync_lock singleton.

    status follows idle -> running -> completed | failed; only 'running'
    blocks a new run. Transitions are conditional UPDATEs so several service
    instances can share the lock.
    """

    __tablename__ = "sync_lock"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SINGLETON_ID)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")
    sync_type: Mapped[str | None] = mapped_column(String(50), nullable=True)
    sync_log_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    owner: Mapped[str | None] = mapped_column(String(100), nullable=True)


class PortalSettingsModel(Base, TimestampMixin):
    """SQLAlchemy model for portal_settings singleton."""

    __tablename__ = "portal_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SINGLETON_ID)
    tier_requirements: Mapped[dict[str, int]] = mapped_column(JSON, nullable=False, default=dict)


class SchemaInfoModel(Base):
    """SQLAlchemy model for schema_info singleton (monotonic schema version)."""

    __tablename__ = "schema_info"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=SINGLETON_ID)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
