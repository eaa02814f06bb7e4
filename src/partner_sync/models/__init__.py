"""
Partner sync models.

Exports all Pydantic and SQLAlchemy models for easy importing.
"""

# Base
from .base import Base, TimestampMixin, to_naive_utc, utcnow

# LMS mirror
from .lms import (
    Confirmed,
    LmsCourseModel,
    LmsEnrollmentModel,
    LmsGroup,
    LmsGroupMember,
    LmsGroupMemberModel,
    LmsGroupModel,
    LmsUser,
    LmsUserModel,
    MembershipState,
    PendingLocal,
    PendingSource,
    UserStatus,
)

# CRM
from .partner import (
    Contact,
    ContactBase,
    ContactModel,
    PartnerModel,
    PartnerSummary,
)

# Sync bookkeeping
from .sync import (
    FULL_SYNC_ORDER,
    SINGLETON_ID,
    PortalSettingsModel,
    SchemaInfoModel,
    SyncLockModel,
    SyncLog,
    SyncLogModel,
    SyncMode,
    SyncSchedule,
    SyncScheduleModel,
    SyncStatus,
    SyncStatusInfo,
    SyncType,
)

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "to_naive_utc",
    "utcnow",
    # LMS mirror
    "Confirmed",
    "LmsCourseModel",
    "LmsEnrollmentModel",
    "LmsGroup",
    "LmsGroupMember",
    "LmsGroupMemberModel",
    "LmsGroupModel",
    "LmsUser",
    "LmsUserModel",
    "MembershipState",
    "PendingLocal",
    "PendingSource",
    "UserStatus",
    # CRM
    "Contact",
    "ContactBase",
    "ContactModel",
    "PartnerModel",
    "PartnerSummary",
    # Sync bookkeeping
    "FULL_SYNC_ORDER",
    "SINGLETON_ID",
    "PortalSettingsModel",
    "SchemaInfoModel",
    "SyncLockModel",
    "SyncLog",
    "SyncLogModel",
    "SyncMode",
    "SyncSchedule",
    "SyncScheduleModel",
    "SyncStatus",
    "SyncStatusInfo",
    "SyncType",
]
