"""
Group membership mutations against the LMS, mirrored locally.

A remote add is followed by an optimistic local row with
pending_source='local'. The next membership sync (or
confirm_pending_memberships) promotes it to 'api' once the LMS lists the
member.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from partner_sync.lms.client import LMS_ERRORS, LmsApi, LmsApiError, MemberChange
from partner_sync.lms.parsers import LmsResponseShapeError, parse_group, parse_membership
from partner_sync.models import (
    Confirmed,
    LmsGroup,
    LmsGroupMember,
    LmsGroupMemberModel,
    LmsGroupModel,
    LmsUserModel,
    MembershipState,
    PartnerModel,
    PendingLocal,
    PendingSource,
    utcnow,
)
from partner_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class GroupNotFoundError(Exception):
    """Raised when an LMS group is not in the local mirror."""

    pass


# ============================================================================
# Result types
# ============================================================================


class MembershipChangeSummary(BaseModel):
    """Per-user classification for one group."""

    group_id: str | None = None
    success: list[str] = Field(default_factory=list)
    already_exists: list[str] = Field(default_factory=list)
    failed: list[dict[str, str]] = Field(default_factory=list)
    error: str | None = None

    @property
    def counts(self) -> dict[str, int]:
        return {
            "success": len(self.success),
            "already_exists": len(self.already_exists),
            "failed": len(self.failed),
        }


class AddUsersResult(BaseModel):
    primary_group: MembershipChangeSummary
    all_partners_group: MembershipChangeSummary | None = None


class PendingConfirmation(BaseModel):
    checked: int = 0
    confirmed: int = 0
    still_pending: int = 0
    failed_groups: int = 0


# ============================================================================
# Membership state
# ============================================================================


def membership_state(row: LmsGroupMemberModel) -> MembershipState:
    if row.pending_source == PendingSource.LOCAL.value:
        return PendingLocal(since=row.added_at, missed_syncs=row.missed_syncs)
    return Confirmed(since=row.added_at)


def promote_membership(state: MembershipState) -> Confirmed:
    """A membership seen upstream is confirmed, keeping its original timestamp."""
    if isinstance(state, PendingLocal):
        return Confirmed(since=state.since)
    return state


def confirm_membership(row: LmsGroupMemberModel) -> None:
    """Rewrite a membership row as confirmed by the LMS API."""
    confirmed = promote_membership(membership_state(row))
    row.pending_source = PendingSource.API.value
    row.added_at = confirmed.since or row.added_at
    row.missed_syncs = 0


# ============================================================================
# Lookups
# ============================================================================


async def get_group_row(session: AsyncSession, group_id: str) -> LmsGroupModel:
    """
    Load a group from the local mirror.

    Raises:
        GroupNotFoundError: If the group does not exist
    """
    group = await session.get(LmsGroupModel, group_id)
    if group is None:
        raise GroupNotFoundError(f"Group {group_id} does not exist")
    return group


async def find_all_partners_group(
    session: AsyncSession, settings: Settings | None = None
) -> LmsGroupModel | None:
    settings = settings or get_settings()
    result = await session.execute(
        select(LmsGroupModel)
        .where(func.lower(LmsGroupModel.name) == settings.all_partners_group_name.lower())
        .order_by(LmsGroupModel.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_group_member_ids(session: AsyncSession, group_id: str) -> list[str]:
    result = await session.execute(
        select(LmsGroupMemberModel.user_id)
        .where(LmsGroupMemberModel.group_id == group_id)
        .order_by(LmsGroupMemberModel.user_id)
    )
    return list(result.scalars())


async def _get_member_row(
    session: AsyncSession, group_id: str, user_id: str
) -> LmsGroupMemberModel | None:
    return await session.get(LmsGroupMemberModel, (group_id, user_id))


# ============================================================================
# Add / remove
# ============================================================================


async def add_user_to_group(
    session: AsyncSession,
    client: LmsApi,
    group_id: str,
    user_id: str,
) -> tuple[MemberChange, str | None]:
    """
    Add one user to one group, remotely then locally.

    Returns:
        (outcome, error message). ALREADY when the LMS reports an existing
        membership or a local row already exists.
    """
    if await session.get(LmsUserModel, user_id) is None:
        return MemberChange.FAILED, f"LMS user {user_id} is not synced locally"

    try:
        outcome = await client.add_group_member(group_id, user_id)
    except LMS_ERRORS as e:
        logger.warning("Adding %s to group %s failed: %s", user_id, group_id, e)
        return MemberChange.FAILED, str(e)

    row = await _get_member_row(session, group_id, user_id)
    if row is not None:
        return MemberChange.ALREADY, None

    session.add(
        LmsGroupMemberModel(
            group_id=group_id,
            user_id=user_id,
            pending_source=PendingSource.LOCAL.value,
            added_at=utcnow(),
            missed_syncs=0,
        )
    )
    await session.flush()
    return outcome, None


async def _add_users(
    session: AsyncSession,
    client: LmsApi,
    group_id: str,
    user_ids: Sequence[str],
    settings: Settings,
) -> MembershipChangeSummary:
    summary = MembershipChangeSummary(group_id=group_id)

    for index, user_id in enumerate(user_ids):
        if index and settings.membership_add_delay_seconds:
            await asyncio.sleep(settings.membership_add_delay_seconds)

        outcome, error = await add_user_to_group(session, client, group_id, user_id)
        if outcome == MemberChange.SUCCESS:
            summary.success.append(user_id)
        elif outcome == MemberChange.ALREADY:
            summary.already_exists.append(user_id)
        else:
            summary.failed.append({"user_id": user_id, "error": error or "unknown error"})

    return summary


async def add_users_to_group(
    session: AsyncSession,
    client: LmsApi,
    group_id: str,
    user_ids: Sequence[str],
    also_add_to_all_partners: bool = False,
    settings: Settings | None = None,
) -> AddUsersResult:
    """
    Add users to a group and optionally to the companion "All Partners" group.

    Calls are paced by ``membership_add_delay_seconds``. Each user is
    classified as success, already a member or failed; one failure never
    stops the rest.

    Args:
        session: Database session
        client: LMS API client
        group_id: Target group
        user_ids: LMS user IDs to add (duplicates are ignored)
        also_add_to_all_partners: Repeat the adds against the All Partners group
        settings: Settings override

    Returns:
        AddUsersResult with one summary per group

    Raises:
        GroupNotFoundError: If the target group does not exist
    """
    settings = settings or get_settings()
    await get_group_row(session, group_id)
    user_ids = list(dict.fromkeys(user_ids))

    result = AddUsersResult(
        primary_group=await _add_users(session, client, group_id, user_ids, settings)
    )

    if also_add_to_all_partners:
        companion = await find_all_partners_group(session, settings)
        if companion is None:
            logger.warning("'%s' group not found locally", settings.all_partners_group_name)
            result.all_partners_group = MembershipChangeSummary(
                error=f"Group '{settings.all_partners_group_name}' not found"
            )
        elif companion.id == group_id:
            result.all_partners_group = result.primary_group
        else:
            result.all_partners_group = await _add_users(
                session, client, companion.id, user_ids, settings
            )

    logger.info("Add users to %s: %s", group_id, result.primary_group.counts)
    return result


async def remove_users_from_group(
    session: AsyncSession,
    client: LmsApi,
    group_id: str,
    user_ids: Sequence[str],
    settings: Settings | None = None,
) -> MembershipChangeSummary:
    """
    Remove users from a group remotely, then drop the local rows.

    A user the LMS reports as not a member lands in ``already_exists``
    (nothing to do upstream) and the local row is still removed.

    Raises:
        GroupNotFoundError: If the group does not exist
    """
    settings = settings or get_settings()
    await get_group_row(session, group_id)
    summary = MembershipChangeSummary(group_id=group_id)

    for index, user_id in enumerate(dict.fromkeys(user_ids)):
        if index and settings.membership_add_delay_seconds:
            await asyncio.sleep(settings.membership_add_delay_seconds)

        try:
            outcome = await client.remove_group_member(group_id, user_id)
        except LMS_ERRORS as e:
            logger.warning("Removing %s from group %s failed: %s", user_id, group_id, e)
            summary.failed.append({"user_id": user_id, "error": str(e)})
            continue

        row = await _get_member_row(session, group_id, user_id)
        if row is not None:
            await session.delete(row)

        if outcome == MemberChange.SUCCESS:
            summary.success.append(user_id)
        else:
            summary.already_exists.append(user_id)

    await session.flush()
    logger.info("Remove users from %s: %s", group_id, summary.counts)
    return summary


# ============================================================================
# Group lifecycle
# ============================================================================


async def create_group(
    session: AsyncSession,
    client: LmsApi,
    partner_name: str,
    settings: Settings | None = None,
) -> LmsGroup:
    """
    Create the LMS group for a partner and mirror it locally.

    The group is named with the partner prefix (``ptr_<partner name>``) and
    linked to the partner with that exact account name, if any.

    Raises:
        LmsApiError, LmsTransientError: If the LMS rejects the create
        LmsResponseShapeError: If the LMS response carries no usable group
    """
    settings = settings or get_settings()
    name = f"{settings.group_prefix}{partner_name.strip()}"

    record = parse_group(await client.create_group(name))

    partner_id = (
        await session.execute(
            select(PartnerModel.id).where(PartnerModel.account_name == partner_name.strip())
        )
    ).scalar_one_or_none()

    group = await session.get(LmsGroupModel, record.id)
    if group is None:
        group = LmsGroupModel(
            id=record.id,
            name=record.name,
            description=record.description,
            user_count=0,
            partner_id=partner_id,
            is_active=True,
            blocked_domains=[],
            custom_domains=[],
            synced_at=utcnow(),
        )
        session.add(group)
    else:
        group.name = record.name
        group.is_active = True
        group.partner_id = group.partner_id or partner_id

    await session.flush()
    logger.info("Created group %s (%s) for partner %r", group.id, group.name, partner_name)
    return LmsGroup.model_validate(group)


async def update_group_name(
    session: AsyncSession,
    client: LmsApi,
    group_id: str,
    name: str,
) -> LmsGroup:
    """
    Rename a group in the LMS and locally.

    Raises:
        GroupNotFoundError: If the group does not exist locally
        LmsApiError, LmsTransientError: If the LMS rejects the rename
    """
    group = await get_group_row(session, group_id)
    name = name.strip()
    if not name:
        raise ValueError("Group name cannot be empty")

    await client.rename_group(group_id, name)
    group.name = name
    group.synced_at = utcnow()
    await session.flush()
    return LmsGroup.model_validate(group)


async def delete_group(session: AsyncSession, client: LmsApi, group_id: str) -> None:
    """
    Delete a group in the LMS and locally (memberships cascade).

    A group already gone upstream (404) is still removed locally.

    Raises:
        GroupNotFoundError: If the group does not exist locally
        LmsApiError, LmsTransientError: If the LMS rejects the delete
    """
    group = await get_group_row(session, group_id)

    try:
        await client.delete_group(group_id)
    except LmsApiError as e:
        if not e.is_not_found:
            raise
        logger.info("Group %s already deleted upstream", group_id)

    await session.delete(group)
    await session.flush()
    logger.info("Deleted group %s", group_id)


# ============================================================================
# Pending memberships
# ============================================================================


async def confirm_pending_memberships(
    session: AsyncSession,
    client: LmsApi,
    settings: Settings | None = None,
) -> PendingConfirmation:
    """
    Re-check pending ('local') memberships against the LMS and promote the
    ones it now lists. Only groups with pending rows are fetched.
    """
    settings = settings or get_settings()
    report = PendingConfirmation()

    rows = list(
        (
            await session.execute(
                select(LmsGroupMemberModel)
                .where(LmsGroupMemberModel.pending_source == PendingSource.LOCAL.value)
                .order_by(LmsGroupMemberModel.group_id, LmsGroupMemberModel.user_id)
            )
        ).scalars()
    )
    by_group: dict[str, list[LmsGroupMemberModel]] = {}
    for row in rows:
        by_group.setdefault(row.group_id, []).append(row)

    for group_id, pending in by_group.items():
        report.checked += len(pending)
        try:
            items = await client.list_group_memberships(group_id)
        except LMS_ERRORS as e:
            report.failed_groups += 1
            report.still_pending += len(pending)
            logger.warning("Could not check pending members of group %s: %s", group_id, e)
            continue

        upstream: set[str] = set()
        for item in items:
            try:
                upstream.add(parse_membership(group_id, item).user_id)
            except LmsResponseShapeError as e:
                logger.warning("Skipping membership in group %s: %s", group_id, e)

        for row in pending:
            if row.user_id in upstream:
                confirm_membership(row)
                report.confirmed += 1
            else:
                report.still_pending += 1

    await session.flush()
    logger.info(
        "Pending memberships: %d checked, %d confirmed, %d still pending",
        report.checked,
        report.confirmed,
        report.still_pending,
    )
    return report


def _stale_pending_query(settings: Settings):
    return (
        select(LmsGroupMemberModel)
        .where(
            LmsGroupMemberModel.pending_source == PendingSource.LOCAL.value,
            LmsGroupMemberModel.missed_syncs >= settings.pending_max_sync_cycles,
        )
        .order_by(LmsGroupMemberModel.group_id, LmsGroupMemberModel.user_id)
    )


async def list_stale_pending_memberships(
    session: AsyncSession, settings: Settings | None = None
) -> list[LmsGroupMember]:
    """Pending rows unconfirmed after ``pending_max_sync_cycles`` membership syncs."""
    settings = settings or get_settings()
    result = await session.execute(_stale_pending_query(settings))
    return [LmsGroupMember.model_validate(row) for row in result.scalars()]


async def expire_stale_pending_memberships(
    session: AsyncSession, settings: Settings | None = None
) -> list[dict[str, Any]]:
    """
    Delete stale pending rows. Operator action; syncs never do this.

    Returns:
        The (group_id, user_id, missed_syncs) of each removed row
    """
    settings = settings or get_settings()
    removed = []
    for row in (await session.execute(_stale_pending_query(settings))).scalars():
        removed.append(
            {"group_id": row.group_id, "user_id": row.user_id, "missed_syncs": row.missed_syncs}
        )
        await session.delete(row)

    await session.flush()
    if removed:
        logger.warning("Expired %d stale pending memberships", len(removed))
    return removed
