"""
LMS sync: pull users, groups, memberships, courses and enrollments from the
LMS API into the local mirror tables.

Every phase upserts by LMS id. A malformed or individually failing record is
counted in ``failed`` and skipped; a failure of the initial list fetch of a
phase aborts the run.

run_sync commits at phase boundaries so that a long full sync keeps the
phases it finished, and so the SyncLog row survives a failed run.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from partner_sync.lms.client import LMS_ERRORS, LmsApi
from partner_sync.lms.parsers import (
    LmsResponseShapeError,
    parse_course,
    parse_course_properties,
    parse_group,
    parse_membership,
    parse_person,
    parse_transcript,
)
from partner_sync.models import (
    FULL_SYNC_ORDER,
    SINGLETON_ID,
    ContactModel,
    LmsCourseModel,
    LmsEnrollmentModel,
    LmsGroupMemberModel,
    LmsGroupModel,
    LmsUserModel,
    PartnerModel,
    PendingSource,
    SyncLockModel,
    SyncLogModel,
    SyncMode,
    SyncStatus,
    SyncType,
    UserStatus,
    utcnow,
)
from partner_sync.services.matching import strip_group_prefix
from partner_sync.services.membership import confirm_membership
from partner_sync.services.reconciliation import link_contacts_to_lms_users
from partner_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)

K = TypeVar("K")

SYSTEM_GROUP_MARKERS = ("admin", "internal", "test")
ALL_USERS_GROUP_NAME = "all users"


# ============================================================================
# Results
# ============================================================================


class PhaseStats(BaseModel):
    """Counters for one sync phase."""

    processed: int = 0
    created: int = 0
    updated: int = 0
    failed: int = 0
    skipped: int = 0
    deleted: int = 0
    details: dict[str, Any] = Field(default_factory=dict)


class SyncResult(BaseModel):
    """Outcome of one sync run."""

    log_id: int
    sync_type: SyncType
    sync_mode: SyncMode
    status: SyncStatus
    started_at: datetime
    completed_at: datetime | None = None
    phases: dict[str, PhaseStats] = Field(default_factory=dict)
    error: str | None = None

    def total(self, counter: str) -> int:
        return sum(getattr(stats, counter) for stats in self.phases.values())


# ============================================================================
# Certification categories
# ============================================================================


@dataclass(frozen=True)
class CategoryRule:
    category: str
    pattern: str
    priority: int


# Checked highest priority first; first case-insensitive substring hit wins.
CERTIFICATION_CATEGORY_RULES: tuple[CategoryRule, ...] = (
    CategoryRule("nintex_k2", "K2", 100),
    CategoryRule("nintex_k2", "Automation K2", 100),
    CategoryRule("nintex_salesforce", "Salesforce", 90),
    CategoryRule("nintex_salesforce", "DocGen for Salesforce", 90),
    CategoryRule("go_to_market", "Go to Market", 80),
    CategoryRule("go_to_market", "GTM", 80),
    CategoryRule("go_to_market", "Sales Professional", 80),
    CategoryRule("go_to_market", "Sales Enablement", 80),
    CategoryRule("nintex_ce", "Automation Cloud", 50),
    CategoryRule("nintex_ce", "Process Manager", 50),
    CategoryRule("nintex_ce", "Promapp", 50),
    CategoryRule("nintex_ce", "RPA", 50),
    CategoryRule("nintex_ce", "eSign", 50),
    CategoryRule("nintex_ce", "Apps", 50),
    CategoryRule("nintex_ce", "Office 365", 50),
    CategoryRule("nintex_ce", "SharePoint", 50),
    CategoryRule("nintex_ce", "Xtensions", 50),
    CategoryRule("nintex_ce", "Process Discovery", 50),
)


def certification_category(course_name: str | None) -> str | None:
    """Derive the certification category of a course from its name."""
    name = (course_name or "").lower()
    for rule in sorted(CERTIFICATION_CATEGORY_RULES, key=lambda r: -r.priority):
        if rule.pattern.lower() in name:
            return rule.category
    return None


def _apply_course_category(course: LmsCourseModel) -> None:
    course.is_certification = course.npcu_value > 0
    course.certification_category = (
        certification_category(course.name) if course.is_certification else None
    )


# ============================================================================
# Helpers
# ============================================================================


def _assign(row: Any, **values: Any) -> bool:
    """Set attributes that differ; return True if anything changed."""
    changed = False
    for key, value in values.items():
        if getattr(row, key) != value:
            setattr(row, key, value)
            changed = True
    return changed


async def _fetch_in_batches(
    keys: Sequence[K],
    fetch: Callable[[K], Awaitable[list[dict]]],
    settings: Settings,
) -> AsyncIterator[list[tuple[K, list[dict] | Exception]]]:
    """
    Run ``fetch`` for every key, ``sync_batch_size`` at a time.

    Batches run one after another with a short pause between them. Each
    yielded batch pairs a key with its items or with the upstream error.
    """
    size = settings.sync_batch_size
    for start in range(0, len(keys), size):
        batch = keys[start : start + size]
        outcomes = await asyncio.gather(*(fetch(k) for k in batch), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException) and not isinstance(outcome, LMS_ERRORS):
                raise outcome
        yield list(zip(batch, outcomes))

        if start + size < len(keys) and settings.sync_batch_delay_seconds:
            await asyncio.sleep(settings.sync_batch_delay_seconds)


async def last_completed_sync(session: AsyncSession, sync_type: SyncType) -> datetime | None:
    """
    Completion time of the last successful run covering ``sync_type``.

    Used as the incremental watermark; a full run covers every type.
    """
    result = await session.execute(
        select(SyncLogModel.completed_at)
        .where(
            SyncLogModel.status == SyncStatus.COMPLETED.value,
            SyncLogModel.sync_type.in_([sync_type.value, SyncType.FULL.value]),
        )
        .order_by(SyncLogModel.completed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ============================================================================
# Users
# ============================================================================


async def _retire_user(
    session: AsyncSession, user: LmsUserModel, replacement_id: str
) -> int | None:
    """
    Mark a user the LMS no longer has as deleted and free its email.

    Used when a re-created LMS account arrives with the same email under a
    new id. The contact link moves to ``replacement_id``; the old contact id
    is returned for the new row.
    """
    contact_id = user.contact_id
    user.status = UserStatus.DELETED.value
    user.email = f"retired+{user.id}+{user.email}"[:255]
    user.contact_id = None
    if contact_id is not None:
        contact = await session.get(ContactModel, contact_id)
        if contact is not None and contact.lms_user_id == user.id:
            contact.lms_user_id = replacement_id
    logger.info("LMS user %s replaced by %s", user.id, replacement_id)
    return contact_id


async def sync_users(
    session: AsyncSession,
    client: LmsApi,
    mode: SyncMode = SyncMode.FULL,
    since: datetime | None = None,
) -> PhaseStats:
    """
    Upsert LMS people into lms_users.

    An email held by a deleted local user, or on a FULL run by one the LMS
    no longer lists, passes to the incoming account (see _retire_user).
    Any other email clash fails the incoming record.

    Args:
        session: Database session
        client: LMS API client
        mode: FULL also marks local users missing upstream as deleted
        since: Incremental watermark; ignored in FULL mode

    Returns:
        PhaseStats for the users phase

    Raises:
        LmsApiError, LmsTransientError: If the people list cannot be fetched
    """
    stats = PhaseStats()
    incremental = mode == SyncMode.INCREMENTAL and since is not None
    items = await client.list_people(updated_since=since if incremental else None)

    records = []
    for item in items:
        stats.processed += 1
        try:
            records.append(parse_person(item))
        except LmsResponseShapeError as e:
            stats.failed += 1
            logger.warning("Skipping person: %s", e)
    listed = {record.id for record in records}

    existing = {u.id: u for u in (await session.execute(select(LmsUserModel))).scalars()}
    by_email = {u.email: u for u in existing.values()}
    seen: set[str] = set()
    now = utcnow()

    for record in records:
        if record.id in seen:
            continue
        seen.add(record.id)

        holder = by_email.get(record.email)
        if holder is not None and holder.id != record.id:
            gone = holder.status == UserStatus.DELETED.value or (
                mode == SyncMode.FULL and holder.id not in listed
            )
            if not gone:
                stats.failed += 1
                logger.warning(
                    "Skipping person %s: email %s belongs to LMS user %s",
                    record.id,
                    record.email,
                    holder.id,
                )
                continue
            if holder.status != UserStatus.DELETED.value:
                stats.deleted += 1
            contact_id = await _retire_user(session, holder, record.id)
            by_email.pop(record.email, None)
            await session.flush()
        else:
            contact_id = None

        values = dict(
            email=record.email,
            first_name=record.first_name,
            last_name=record.last_name,
            created_at_lms=record.created_at,
            last_active_at=record.last_active_at,
            deactivated_at=record.deactivated_at,
            status=(UserStatus.DEACTIVATED if record.is_deactivated else UserStatus.ACTIVE).value,
        )

        user = existing.get(record.id)
        if user is None:
            user = LmsUserModel(id=record.id, synced_at=now, contact_id=contact_id, **values)
            session.add(user)
            existing[user.id] = user
            by_email[user.email] = user
            stats.created += 1
            continue

        old_email = user.email
        if _assign(user, **values):
            stats.updated += 1
            if old_email != user.email:
                by_email.pop(old_email, None)
                by_email[user.email] = user
        user.synced_at = now

    if mode == SyncMode.FULL:
        for user_id, user in existing.items():
            if user_id not in seen and user.status != UserStatus.DELETED.value:
                user.status = UserStatus.DELETED.value
                stats.deleted += 1

    await session.flush()
    logger.info(
        "Users sync: %d processed, %d created, %d updated, %d deleted, %d failed",
        stats.processed,
        stats.created,
        stats.updated,
        stats.deleted,
        stats.failed,
    )
    return stats


# ============================================================================
# Groups
# ============================================================================


def is_partner_group(name: str, settings: Settings | None = None) -> bool:
    """
    Whether an LMS group is mirrored locally.

    The "All Users" system group is skipped, the companion "All Partners"
    group and prefixed partner groups are kept, and anything that looks like
    an admin/internal/test group is dropped.
    """
    settings = settings or get_settings()
    lowered = name.strip().lower()

    if lowered == ALL_USERS_GROUP_NAME:
        return False
    if lowered == settings.all_partners_group_name.lower():
        return True
    if settings.group_prefix and lowered.startswith(settings.group_prefix.lower()):
        return True
    return not any(marker in lowered for marker in SYSTEM_GROUP_MARKERS)


async def sync_groups(
    session: AsyncSession,
    client: LmsApi,
    settings: Settings | None = None,
) -> PhaseStats:
    """
    Upsert LMS groups into lms_groups.

    New groups are linked to the partner whose account name equals the
    group name with or without the naming prefix. Existing links, including
    manual ones, are never overwritten here. Groups no longer listed
    upstream are marked inactive.

    Raises:
        LmsApiError, LmsTransientError: If the group list cannot be fetched
    """
    settings = settings or get_settings()
    stats = PhaseStats()
    items = await client.list_groups()

    partners = {
        p.account_name.strip().lower(): p.id
        for p in (await session.execute(select(PartnerModel))).scalars()
    }
    existing = {g.id: g for g in (await session.execute(select(LmsGroupModel))).scalars()}
    seen: set[str] = set()
    linked = 0
    now = utcnow()

    for item in items:
        stats.processed += 1
        try:
            record = parse_group(item)
        except LmsResponseShapeError as e:
            stats.failed += 1
            logger.warning("Skipping group: %s", e)
            continue

        if not is_partner_group(record.name, settings):
            stats.skipped += 1
            continue
        seen.add(record.id)

        partner_id = partners.get(record.name.strip().lower()) or partners.get(
            strip_group_prefix(record.name, settings.group_prefix).strip().lower()
        )

        group = existing.get(record.id)
        if group is None:
            group = LmsGroupModel(
                id=record.id,
                name=record.name,
                description=record.description,
                user_count=record.user_count,
                partner_id=partner_id,
                is_active=True,
                blocked_domains=[],
                custom_domains=[],
                synced_at=now,
            )
            session.add(group)
            existing[group.id] = group
            stats.created += 1
            if partner_id is not None:
                linked += 1
            continue

        changed = _assign(
            group,
            name=record.name,
            description=record.description,
            user_count=record.user_count,
            is_active=True,
        )
        if group.partner_id is None and partner_id is not None:
            group.partner_id = partner_id
            linked += 1
            changed = True
        if changed:
            stats.updated += 1
        group.synced_at = now

    for group_id, group in existing.items():
        if group_id not in seen and group.is_active:
            group.is_active = False
            stats.deleted += 1

    stats.details["linked_to_partner"] = linked
    await session.flush()
    logger.info(
        "Groups sync: %d processed, %d created, %d updated, %d inactive, %d linked",
        stats.processed,
        stats.created,
        stats.updated,
        stats.deleted,
        linked,
    )
    return stats


# ============================================================================
# Memberships
# ============================================================================


async def apply_group_memberships(
    session: AsyncSession,
    group: LmsGroupModel,
    upstream_user_ids: set[str],
    settings: Settings,
    stats: PhaseStats,
    upstream_count: int | None = None,
) -> list[dict[str, Any]]:
    """
    Reconcile one group's local membership rows against the upstream list.

    Missing rows are inserted as confirmed, pending rows seen upstream are
    promoted, confirmed rows no longer upstream are removed and pending rows
    not yet upstream are kept with their miss counter bumped.

    upstream_count is the LMS member count when it includes users not
    mirrored locally.

    Returns:
        Pending rows that have now missed ``pending_max_sync_cycles`` syncs
    """
    rows = {
        row.user_id: row
        for row in (
            await session.execute(
                select(LmsGroupMemberModel).where(LmsGroupMemberModel.group_id == group.id)
            )
        ).scalars()
    }
    stale: list[dict[str, Any]] = []
    now = utcnow()

    for user_id in sorted(upstream_user_ids):
        row = rows.get(user_id)
        if row is None:
            session.add(
                LmsGroupMemberModel(
                    group_id=group.id,
                    user_id=user_id,
                    pending_source=PendingSource.API.value,
                    added_at=now,
                    missed_syncs=0,
                )
            )
            stats.created += 1
        elif row.pending_source == PendingSource.LOCAL.value:
            confirm_membership(row)
            stats.updated += 1
            stats.details["promoted"] = stats.details.get("promoted", 0) + 1

    for user_id, row in rows.items():
        if user_id in upstream_user_ids:
            continue
        if row.pending_source == PendingSource.API.value:
            await session.delete(row)
            stats.deleted += 1
            continue

        row.missed_syncs += 1
        if row.missed_syncs >= settings.pending_max_sync_cycles:
            stale.append(
                {"group_id": group.id, "user_id": user_id, "missed_syncs": row.missed_syncs}
            )
            logger.warning(
                "Pending membership %s/%s unconfirmed after %d syncs",
                group.id,
                user_id,
                row.missed_syncs,
            )

    group.user_count = len(upstream_user_ids) if upstream_count is None else upstream_count
    return stale


async def sync_memberships(
    session: AsyncSession,
    client: LmsApi,
    settings: Settings | None = None,
) -> PhaseStats:
    """
    Mirror the member list of every active local group.

    A group whose member list cannot be fetched is counted as failed and
    left untouched. Members not yet mirrored as LMS users are skipped.
    """
    settings = settings or get_settings()
    stats = PhaseStats()

    groups = list(
        (
            await session.execute(
                select(LmsGroupModel)
                .where(LmsGroupModel.is_active.is_(True))
                .order_by(LmsGroupModel.id)
            )
        ).scalars()
    )
    groups_by_id = {g.id: g for g in groups}
    known_users = set((await session.execute(select(LmsUserModel.id))).scalars())
    stale: list[dict[str, Any]] = []

    async for batch in _fetch_in_batches(
        [g.id for g in groups], client.list_group_memberships, settings
    ):
        for group_id, outcome in batch:
            if isinstance(outcome, Exception):
                stats.failed += 1
                logger.warning("Could not fetch members of group %s: %s", group_id, outcome)
                continue

            upstream: set[str] = set()
            listed = 0
            for item in outcome:
                stats.processed += 1
                try:
                    record = parse_membership(group_id, item)
                except LmsResponseShapeError as e:
                    stats.failed += 1
                    logger.warning("Skipping membership in group %s: %s", group_id, e)
                    continue
                listed += 1
                if record.user_id not in known_users:
                    stats.skipped += 1
                    continue
                upstream.add(record.user_id)

            stale.extend(
                await apply_group_memberships(
                    session, groups_by_id[group_id], upstream, settings, stats, listed
                )
            )

    if stale:
        stats.details["stale_pending"] = stale
    await session.flush()
    logger.info(
        "Memberships sync: %d groups, %d created, %d promoted, %d removed, %d stale pending",
        len(groups),
        stats.created,
        stats.details.get("promoted", 0),
        stats.deleted,
        len(stale),
    )
    return stats


# ============================================================================
# Courses
# ============================================================================


async def sync_courses(session: AsyncSession, client: LmsApi) -> PhaseStats:
    """
    Upsert the course catalog into lms_courses.

    NPCU values are not part of the catalog; see sync_course_properties.
    """
    stats = PhaseStats()
    items = await client.list_courses()

    existing = {c.id: c for c in (await session.execute(select(LmsCourseModel))).scalars()}
    now = utcnow()

    for item in items:
        stats.processed += 1
        try:
            record = parse_course(item)
        except LmsResponseShapeError as e:
            stats.failed += 1
            logger.warning("Skipping course: %s", e)
            continue

        course = existing.get(record.id)
        if course is None:
            course = LmsCourseModel(
                id=record.id,
                name=record.name,
                description=record.description,
                status=record.status,
                npcu_value=0,
                synced_at=now,
            )
            _apply_course_category(course)
            session.add(course)
            existing[course.id] = course
            stats.created += 1
            continue

        if _assign(
            course, name=record.name, description=record.description, status=record.status
        ):
            _apply_course_category(course)
            stats.updated += 1
        course.synced_at = now

    await session.flush()
    logger.info(
        "Courses sync: %d processed, %d created, %d updated, %d failed",
        stats.processed,
        stats.created,
        stats.updated,
        stats.failed,
    )
    return stats


async def sync_course_properties(session: AsyncSession, client: LmsApi) -> PhaseStats:
    """
    Apply published NPCU values to courses.

    A course missing from the catalog but carrying NPCU is an older
    certification version; it is created as an archived course so that
    completions of it still count. Other unknown courses are skipped.
    """
    stats = PhaseStats()
    items = await client.list_course_properties()

    existing = {c.id: c for c in (await session.execute(select(LmsCourseModel))).scalars()}
    certifications = 0
    now = utcnow()

    for item in items:
        stats.processed += 1
        try:
            record = parse_course_properties(item)
        except LmsResponseShapeError as e:
            stats.failed += 1
            logger.warning("Skipping course properties: %s", e)
            continue

        course = existing.get(record.course_id)
        if course is None:
            if record.npcu_value <= 0:
                stats.skipped += 1
                continue
            course = LmsCourseModel(
                id=record.course_id,
                name=record.name or f"Unknown Course ({record.course_id})",
                description="Archived certification (from course properties)",
                status="archived",
                npcu_value=record.npcu_value,
                synced_at=now,
            )
            _apply_course_category(course)
            session.add(course)
            existing[course.id] = course
            stats.created += 1
            certifications += 1
            continue

        if _assign(course, npcu_value=record.npcu_value):
            stats.updated += 1
        _apply_course_category(course)
        course.synced_at = now
        if course.is_certification:
            certifications += 1

    stats.details["certifications"] = certifications
    await session.flush()
    logger.info(
        "Course properties sync: %d processed, %d certifications, %d archived created",
        stats.processed,
        certifications,
        stats.created,
    )
    return stats


# ============================================================================
# Enrollments
# ============================================================================


def _partner_users_query(mode: SyncMode, settings: Settings):
    """LMS users belonging to a partner, via a linked contact or a partner group."""
    partner_contacts = select(ContactModel.id).where(ContactModel.partner_id.is_not(None))
    partner_group_members = (
        select(LmsGroupMemberModel.user_id)
        .join(LmsGroupModel, LmsGroupModel.id == LmsGroupMemberModel.group_id)
        .where(LmsGroupModel.partner_id.is_not(None))
    )

    query = select(LmsUserModel).where(
        LmsUserModel.status != UserStatus.DELETED.value,
        or_(
            LmsUserModel.contact_id.in_(partner_contacts),
            LmsUserModel.id.in_(partner_group_members),
        ),
    )

    if mode == SyncMode.INCREMENTAL:
        cutoff = utcnow() - timedelta(days=settings.enrollment_max_age_days)
        query = query.where(
            or_(
                LmsUserModel.enrollment_synced_at.is_(None),
                LmsUserModel.enrollment_synced_at < cutoff,
            )
        )

    return query.order_by(LmsUserModel.id)


async def sync_enrollments(
    session: AsyncSession,
    client: LmsApi,
    mode: SyncMode = SyncMode.FULL,
    settings: Settings | None = None,
) -> PhaseStats:
    """
    Mirror course transcripts of partner users into lms_enrollments.

    Only partner users are fetched. In INCREMENTAL mode users refreshed
    within ``enrollment_max_age_days`` are left alone. A transcript for a
    course not in the catalog is counted as failed.
    """
    settings = settings or get_settings()
    stats = PhaseStats()

    users = list((await session.execute(_partner_users_query(mode, settings))).scalars())
    users_by_id = {u.id: u for u in users}
    known_courses = set((await session.execute(select(LmsCourseModel.id))).scalars())
    failed_users = 0

    async for batch in _fetch_in_batches(list(users_by_id), client.list_transcripts, settings):
        batch_ids = [user_id for user_id, _ in batch]
        existing = {
            e.id: e
            for e in (
                await session.execute(
                    select(LmsEnrollmentModel).where(LmsEnrollmentModel.user_id.in_(batch_ids))
                )
            ).scalars()
        }
        now = utcnow()

        for user_id, outcome in batch:
            if isinstance(outcome, Exception):
                stats.failed += 1
                failed_users += 1
                logger.warning("Could not fetch transcripts for user %s: %s", user_id, outcome)
                continue

            for item in outcome:
                try:
                    record = parse_transcript(user_id, item)
                except LmsResponseShapeError as e:
                    stats.failed += 1
                    logger.warning("Skipping transcript for user %s: %s", user_id, e)
                    continue
                if record is None:
                    continue

                stats.processed += 1
                if record.course_id not in known_courses:
                    stats.failed += 1
                    logger.warning(
                        "Transcript %s references unknown course %s", record.id, record.course_id
                    )
                    continue

                values = dict(
                    user_id=record.user_id,
                    course_id=record.course_id,
                    status=record.status,
                    progress_percent=record.progress_percent,
                    enrolled_at=record.enrolled_at,
                    started_at=record.started_at,
                    completed_at=record.completed_at,
                    expires_at=record.expires_at,
                    score=record.score,
                )
                enrollment = existing.get(record.id)
                if enrollment is None:
                    enrollment = LmsEnrollmentModel(id=record.id, synced_at=now, **values)
                    session.add(enrollment)
                    existing[record.id] = enrollment
                    stats.created += 1
                    continue
                if _assign(enrollment, **values):
                    stats.updated += 1
                enrollment.synced_at = now

            users_by_id[user_id].enrollment_synced_at = now

        await session.flush()

    stats.details["users"] = len(users)
    stats.details["users_failed"] = failed_users
    logger.info(
        "Enrollments sync: %d users, %d transcripts, %d created, %d updated, %d failed",
        len(users),
        stats.processed,
        stats.created,
        stats.updated,
        stats.failed,
    )
    return stats


# ============================================================================
# Runs
# ============================================================================


async def start_sync_log(
    session: AsyncSession, sync_type: SyncType, mode: SyncMode
) -> SyncLogModel:
    """Append a ``running`` SyncLog row for a new run."""
    log = SyncLogModel(
        sync_type=sync_type.value,
        sync_mode=mode.value,
        status=SyncStatus.RUNNING.value,
        started_at=utcnow(),
        details={},
    )
    session.add(log)
    await session.flush()
    return log


async def _run_phase(
    session: AsyncSession,
    client: LmsApi,
    phase: SyncType,
    mode: SyncMode,
    settings: Settings,
) -> dict[str, PhaseStats]:
    if phase == SyncType.USERS:
        since = None
        if mode == SyncMode.INCREMENTAL:
            since = await last_completed_sync(session, SyncType.USERS)
        stats = await sync_users(session, client, mode, since)
        stats.details["contacts_linked"] = await link_contacts_to_lms_users(session)
        return {"users": stats}
    if phase == SyncType.GROUPS:
        return {"groups": await sync_groups(session, client, settings)}
    if phase == SyncType.MEMBERSHIPS:
        return {"memberships": await sync_memberships(session, client, settings)}
    if phase == SyncType.COURSES:
        return {
            "courses": await sync_courses(session, client),
            "course_properties": await sync_course_properties(session, client),
        }
    if phase == SyncType.ENROLLMENTS:
        return {"enrollments": await sync_enrollments(session, client, mode, settings)}
    raise ValueError(f"Not a sync phase: {phase}")


async def touch_sync_lock(session: AsyncSession, log_id: int) -> bool:
    """
    Refresh locked_at if the sync lock is still held for run ``log_id``.

    Keeps a long run from looking stale between phases. Returns False when
    the lock has been reclaimed or reset, or when the run never held it.
    """
    result = await session.execute(
        update(SyncLockModel)
        .where(
            SyncLockModel.id == SINGLETON_ID,
            SyncLockModel.sync_log_id == log_id,
            SyncLockModel.status == SyncStatus.RUNNING.value,
        )
        .values(locked_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _finish_log(session: AsyncSession, result: SyncResult) -> None:
    log = await session.get(SyncLogModel, result.log_id, populate_existing=True)
    if log is None:
        return
    if log.status != SyncStatus.RUNNING.value:
        # Failed by a lock reclaim or reset while this run was still going.
        logger.warning(
            "Sync %d finished as %s but its log is already %s; keeping it",
            result.log_id,
            result.status.value,
            log.status,
        )
        return
    log.status = result.status.value
    log.completed_at = result.completed_at
    log.records_processed = result.total("processed")
    log.records_created = result.total("created")
    log.records_updated = result.total("updated")
    log.records_failed = result.total("failed")
    log.error_message = result.error
    log.details = {name: stats.model_dump() for name, stats in result.phases.items()}


async def run_sync(
    session: AsyncSession,
    client: LmsApi,
    sync_type: SyncType = SyncType.FULL,
    mode: SyncMode = SyncMode.FULL,
    settings: Settings | None = None,
    log: SyncLogModel | None = None,
) -> SyncResult:
    """
    Run one sync of ``sync_type`` and record it in sync_logs.

    A FULL sync type runs users, groups, memberships, courses and
    enrollments in that order. Commits after each phase. Does not take the
    sync lock; use partner_sync.services.scheduler.trigger_sync for that.

    Args:
        session: Database session
        client: LMS API client
        sync_type: A single entity type or FULL
        mode: FULL fetch or INCREMENTAL (watermark-filtered where supported)
        settings: Settings override
        log: Already-started SyncLog row for this run

    Returns:
        SyncResult with per-phase counts

    Raises:
        LmsApiError, LmsTransientError: If a phase's list fetch fails; the
            run is recorded as failed before the error propagates
    """
    settings = settings or get_settings()
    phases = FULL_SYNC_ORDER if sync_type == SyncType.FULL else (sync_type,)

    if log is None:
        log = await start_sync_log(session, sync_type, mode)
    result = SyncResult(
        log_id=log.id,
        sync_type=sync_type,
        sync_mode=mode,
        status=SyncStatus.RUNNING,
        started_at=log.started_at,
    )
    await session.commit()
    logger.info("Sync %d started: %s (%s)", result.log_id, sync_type.value, mode.value)

    try:
        for phase in phases:
            result.phases.update(await _run_phase(session, client, phase, mode, settings))
            await touch_sync_lock(session, result.log_id)
            await session.commit()
    except Exception as e:
        await session.rollback()
        logger.exception("Sync %d failed during %s", result.log_id, sync_type.value)
        result.status = SyncStatus.FAILED
        result.error = str(e)
        result.completed_at = utcnow()
        await _finish_log(session, result)
        await session.commit()
        raise

    result.status = SyncStatus.COMPLETED
    result.completed_at = utcnow()
    await _finish_log(session, result)
    await session.commit()
    logger.info(
        "Sync %d completed: %d processed, %d created, %d updated, %d failed",
        result.log_id,
        result.total("processed"),
        result.total("created"),
        result.total("updated"),
        result.total("failed"),
    )
    return result
