"""
LMS models: users, groups, group memberships, courses and enrollments.

These are the local mirror of the LMS, owned by the sync adapter. The
cross-links (lms_groups.partner_id, lms_users.contact_id) are written by
reconciliation.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, utcnow


class UserStatus(str, Enum):
    """LMS account status."""

    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    DELETED = "deleted"


class PendingSource(str, Enum):
    """Where a group membership row came from."""

    API = "api"
    LOCAL = "local"


@dataclass(frozen=True)
class Confirmed:
    """Membership reported by the LMS API."""

    since: datetime | None = None


@dataclass(frozen=True)
class PendingLocal:
    """Membership written locally after a remote add, not yet seen in an API sync."""

    since: datetime
    missed_syncs: int = 0


MembershipState = Confirmed | PendingLocal


# ============================================================================
# Pydantic Models (for API/validation)
# ============================================================================


class LmsUser(BaseModel):
    """LMS learner record."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    status: UserStatus = UserStatus.ACTIVE
    last_active_at: datetime | None = None
    contact_id: int | None = None

    @property
    def domain(self) -> str | None:
        if "@" not in self.email:
            return None
        return self.email.rsplit("@", 1)[1].lower()


class LmsGroup(BaseModel):
    """Partner-facing LMS group."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    user_count: int = 0
    partner_id: int | None = None
    is_active: bool = True
    blocked_domains: list[str] = Field(default_factory=list)
    custom_domains: list[str] = Field(default_factory=list)
    potential_users: int | None = None
    total_npcu: int | None = None
    last_analyzed: datetime | None = None
    synced_at: datetime | None = None


class LmsGroupMember(BaseModel):
    """Group membership row."""

    model_config = ConfigDict(from_attributes=True)

    group_id: str
    user_id: str
    pending_source: PendingSource
    added_at: datetime | None = None
    missed_syncs: int = 0

    @property
    def state(self) -> MembershipState:
        if self.pending_source == PendingSource.LOCAL:
            return PendingLocal(since=self.added_at or utcnow(), missed_syncs=self.missed_syncs)
        return Confirmed(since=self.added_at)


# ============================================================================
# SQLAlchemy Models (for database)
# ============================================================================


class LmsUserModel(Base):
    """SQLAlchemy model for lms_users table."""

    __tablename__ = "lms_users"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=UserStatus.ACTIVE.value, index=True
    )
    created_at_lms: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_active_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    deactivated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    contact_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("contacts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    enrollment_synced_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    memberships: Mapped[list["LmsGroupMemberModel"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    enrollments: Mapped[list["LmsEnrollmentModel"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )


class LmsGroupModel(Base):
    """SQLAlchemy model for lms_groups table."""

    __tablename__ = "lms_groups"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    partner_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("partners.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Operator overrides for domain analysis
    blocked_domains: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    custom_domains: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    # Recorded analysis
    potential_users: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_npcu: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_analyzed: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    members: Mapped[list["LmsGroupMemberModel"]] = relationship(
        back_populates="group", cascade="all, delete-orphan", passive_deletes=True
    )


class LmsGroupMemberModel(Base):
    """
    SQLAlchemy model for lms_group_members table.

    pending_source: 'api' = confirmed by an API sync, 'local' = written after
    a remote add, awaiting confirmation.
    """

    __tablename__ = "lms_group_members"

    group_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("lms_groups.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("lms_users.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    pending_source: Mapped[str] = mapped_column(
        String(10), nullable=False, default=PendingSource.API.value, index=True
    )
    added_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    missed_syncs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Relationships
    group: Mapped[LmsGroupModel] = relationship(back_populates="members")
    user: Mapped[LmsUserModel] = relationship(back_populates="memberships")


class LmsCourseModel(Base):
    """SQLAlchemy model for lms_courses table."""

    __tablename__ = "lms_courses"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    product_category: Mapped[str | None] = mapped_column(String(100), nullable=True, index=True)
    certification_category: Mapped[str | None] = mapped_column(
        String(50), nullable=True, index=True
    )
    npcu_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    is_certification: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    enrollments: Mapped[list["LmsEnrollmentModel"]] = relationship(
        back_populates="course", cascade="all, delete-orphan", passive_deletes=True
    )


class LmsEnrollmentModel(Base):
    """SQLAlchemy model for lms_enrollments table."""

    __tablename__ = "lms_enrollments"

    id: Mapped[str] = mapped_column(String(50), primary_key=True)
    user_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("lms_users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    course_id: Mapped[str] = mapped_column(
        String(50), ForeignKey("lms_courses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="enrolled")
    progress_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enrolled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    score: Mapped[float | None] = mapped_column(Float, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    # Relationships
    user: Mapped[LmsUserModel] = relationship(back_populates="enrollments")
    course: Mapped[LmsCourseModel] = relationship(back_populates="enrollments")
