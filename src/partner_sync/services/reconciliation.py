"""
Reconciliation between LMS groups and CRM partners.

Matches groups to partner accounts by name, analyses a group's member email
domains to find potential users, merges groups and links contacts to LMS
users. This module owns the cross-link columns: lms_groups.partner_id,
lms_users.contact_id and contacts.lms_user_id.

analyze_group is read-only; record_analysis persists its summary.
"""

import logging
from collections.abc import Sequence
from datetime import datetime

from pydantic import BaseModel, Field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from partner_sync.lms.client import LMS_ERRORS, LmsApi, MemberChange
from partner_sync.models import (
    Contact,
    ContactModel,
    LmsGroup,
    LmsGroupMemberModel,
    LmsGroupModel,
    LmsUser,
    LmsUserModel,
    PartnerModel,
    PartnerSummary,
    UserStatus,
    utcnow,
)
from partner_sync.services.compliance import PartnerNotFoundError, group_npcu
from partner_sync.services.domains import extract_domain, is_excluded_domain, normalize_domain
from partner_sync.services.matching import MatchResult, rank_partner_matches
from partner_sync.services.membership import (
    GroupNotFoundError,
    add_user_to_group,
    delete_group,
    get_group_member_ids,
    get_group_row,
)
from partner_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Groups never auto-linked to a partner.
SYSTEM_GROUP_PATTERNS = ("all partner", "all user", "admin", "internal", "test")


# ============================================================================
# Result types
# ============================================================================


class AutoMatch(BaseModel):
    group_id: str
    group_name: str
    partner_id: int
    account_name: str
    score: float
    exact: bool


class AutoMatchReport(BaseModel):
    matched: int = 0
    skipped: int = 0
    dry_run: bool = False
    matches: list[AutoMatch] = Field(default_factory=list)


class DomainSettings(BaseModel):
    group_id: str
    blocked_domains: list[str] = Field(default_factory=list)
    custom_domains: list[str] = Field(default_factory=list)


class GroupAnalysis(BaseModel):
    """Read-only analysis of one group."""

    group_id: str
    group_name: str
    partner_id: int | None = None
    member_count: int = 0
    domains: list[str] = Field(default_factory=list)
    potential_users: list[LmsUser] = Field(default_factory=list)
    crm_contacts_not_in_lms: list[Contact] = Field(default_factory=list)
    # Contacts whose upstream lookup failed; also listed as not in the LMS.
    lookup_failed: list[str] = Field(default_factory=list)
    analyzed_at: datetime


class MergeResult(BaseModel):
    target_group_id: str
    users_moved: int = 0
    groups_deleted: int = 0
    errors: list[dict[str, str]] = Field(default_factory=list)


# ============================================================================
# Partner matching
# ============================================================================


async def _partner_summaries(session: AsyncSession) -> list[PartnerSummary]:
    result = await session.execute(select(PartnerModel).order_by(PartnerModel.account_name))
    return [PartnerSummary.model_validate(p) for p in result.scalars()]


async def match_group_to_partner(
    session: AsyncSession,
    group_id: str,
    settings: Settings | None = None,
) -> MatchResult:
    """
    Find the partner a group belongs to.

    Returns the exact normalized-name match if there is one, otherwise up
    to ``match_limit`` close matches scoring at least ``match_threshold``.

    Raises:
        GroupNotFoundError: If the group does not exist
    """
    settings = settings or get_settings()
    group = await get_group_row(session, group_id)
    return rank_partner_matches(
        group.name,
        await _partner_summaries(session),
        threshold=settings.match_threshold,
        limit=settings.match_limit,
        prefix=settings.group_prefix,
    )


def is_system_group(name: str) -> bool:
    lowered = name.lower()
    return any(pattern in lowered for pattern in SYSTEM_GROUP_PATTERNS)


async def auto_match_groups(
    session: AsyncSession,
    min_score: float | None = None,
    dry_run: bool = False,
    settings: Settings | None = None,
) -> AutoMatchReport:
    """
    Link every unlinked, non-system group to its partner.

    A group is linked to its exact match, or to its best close match when
    that scores at least ``min_score`` (default ``auto_match_min_score``).

    Args:
        session: Database session
        min_score: Minimum similarity for a fuzzy link
        dry_run: Report what would be linked without writing
        settings: Settings override

    Returns:
        AutoMatchReport
    """
    settings = settings or get_settings()
    min_score = settings.auto_match_min_score if min_score is None else min_score
    report = AutoMatchReport(dry_run=dry_run)

    partners = await _partner_summaries(session)
    groups = (
        await session.execute(
            select(LmsGroupModel)
            .where(LmsGroupModel.partner_id.is_(None), LmsGroupModel.is_active.is_(True))
            .order_by(LmsGroupModel.name)
        )
    ).scalars()

    for group in groups:
        if is_system_group(group.name):
            report.skipped += 1
            continue

        result = rank_partner_matches(
            group.name,
            partners,
            threshold=settings.match_threshold,
            limit=settings.match_limit,
            prefix=settings.group_prefix,
        )
        if result.exact_match is not None:
            partner, score, exact = result.exact_match, 1.0, True
        elif result.close_matches and result.close_matches[0].similarity >= min_score:
            best = result.close_matches[0]
            partner, score, exact = best.partner, best.similarity, False
        else:
            report.skipped += 1
            continue

        if not dry_run:
            group.partner_id = partner.id
        report.matched += 1
        report.matches.append(
            AutoMatch(
                group_id=group.id,
                group_name=group.name,
                partner_id=partner.id,
                account_name=partner.account_name,
                score=round(score, 4),
                exact=exact,
            )
        )

    await session.flush()
    logger.info(
        "Auto-match%s: %d matched, %d skipped",
        " (dry run)" if dry_run else "",
        report.matched,
        report.skipped,
    )
    return report


async def link_group_to_partner(
    session: AsyncSession, group_id: str, partner_id: int
) -> LmsGroup:
    """
    Manually link a group to a partner.

    Raises:
        GroupNotFoundError: If the group does not exist
        PartnerNotFoundError: If the partner does not exist
    """
    group = await get_group_row(session, group_id)
    if await session.get(PartnerModel, partner_id) is None:
        raise PartnerNotFoundError(f"Partner {partner_id} does not exist")

    group.partner_id = partner_id
    await session.flush()
    logger.info("Linked group %s to partner %d", group_id, partner_id)
    return LmsGroup.model_validate(group)


async def unlink_group(session: AsyncSession, group_id: str) -> LmsGroup:
    """
    Clear a group's partner link.

    Raises:
        GroupNotFoundError: If the group does not exist
    """
    group = await get_group_row(session, group_id)
    group.partner_id = None
    await session.flush()
    return LmsGroup.model_validate(group)


async def partners_without_groups(session: AsyncSession) -> list[PartnerSummary]:
    """Partners with no linked LMS group."""
    linked = select(LmsGroupModel.partner_id).where(LmsGroupModel.partner_id.is_not(None))
    result = await session.execute(
        select(PartnerModel)
        .where(PartnerModel.id.not_in(linked))
        .order_by(PartnerModel.account_name)
    )
    return [PartnerSummary.model_validate(p) for p in result.scalars()]


# ============================================================================
# Domain overrides
# ============================================================================


def _merge_domain(domains: Sequence[str], domain: str) -> list[str]:
    domain = normalize_domain(domain)
    if not domain:
        raise ValueError("Domain cannot be empty")
    return sorted(set(domains) | {domain})


def _drop_domain(domains: Sequence[str], domain: str) -> list[str]:
    return [d for d in domains if d != normalize_domain(domain)]


async def get_domain_settings(session: AsyncSession, group_id: str) -> DomainSettings:
    group = await get_group_row(session, group_id)
    return DomainSettings(
        group_id=group.id,
        blocked_domains=list(group.blocked_domains or []),
        custom_domains=list(group.custom_domains or []),
    )


async def add_blocked_domain(session: AsyncSession, group_id: str, domain: str) -> DomainSettings:
    """Never treat ``domain`` as belonging to this group."""
    group = await get_group_row(session, group_id)
    group.blocked_domains = _merge_domain(group.blocked_domains or [], domain)
    await session.flush()
    return await get_domain_settings(session, group_id)


async def remove_blocked_domain(
    session: AsyncSession, group_id: str, domain: str
) -> DomainSettings:
    group = await get_group_row(session, group_id)
    group.blocked_domains = _drop_domain(group.blocked_domains or [], domain)
    await session.flush()
    return await get_domain_settings(session, group_id)


async def add_custom_domain(session: AsyncSession, group_id: str, domain: str) -> DomainSettings:
    """Treat ``domain`` as this group's even if no member has it yet."""
    group = await get_group_row(session, group_id)
    group.custom_domains = _merge_domain(group.custom_domains or [], domain)
    await session.flush()
    return await get_domain_settings(session, group_id)


async def remove_custom_domain(
    session: AsyncSession, group_id: str, domain: str
) -> DomainSettings:
    group = await get_group_row(session, group_id)
    group.custom_domains = _drop_domain(group.custom_domains or [], domain)
    await session.flush()
    return await get_domain_settings(session, group_id)


# ============================================================================
# Group analysis
# ============================================================================


def group_domains(
    member_emails: Sequence[str],
    blocked: Sequence[str] = (),
    custom: Sequence[str] = (),
) -> list[str]:
    """
    Organisational domains of a group.

    Member domains minus public providers and blocked domains, plus custom
    domains (unless blocked).
    """
    blocked_set = {normalize_domain(d) for d in blocked}
    domains = {
        domain
        for domain in (extract_domain(email) for email in member_emails)
        if domain and not is_excluded_domain(domain)
    }
    domains |= {normalize_domain(d) for d in custom if normalize_domain(d)}
    return sorted(domains - blocked_set)


async def _contact_in_lms(
    contact: ContactModel,
    local_emails: set[str],
    client: LmsApi | None,
    lookup_failed: list[str],
) -> bool:
    email = contact.email.strip().lower()
    if contact.lms_user_id or email in local_emails:
        return True
    if client is None:
        return False
    try:
        return await client.find_person_by_email(email) is not None
    except LMS_ERRORS as e:
        # Counted as absent; the email is also reported in lookup_failed.
        logger.warning("LMS lookup for %s failed: %s", email, e)
        lookup_failed.append(email)
        return False


async def analyze_group(
    session: AsyncSession,
    group_id: str,
    client: LmsApi | None = None,
) -> GroupAnalysis:
    """
    Work out who else should be in a group.

    Potential users are active LMS users on one of the group's organisational
    domains who are not yet members. For a partner-linked group, CRM contacts
    of that partner who are neither members nor LMS users are listed too;
    when ``client`` is given, contacts unknown locally are also looked up in
    the LMS.

    Args:
        session: Database session
        group_id: Group to analyse
        client: Optional LMS client for upstream email lookups

    Returns:
        GroupAnalysis (nothing is written)

    Raises:
        GroupNotFoundError: If the group does not exist
    """
    group = await get_group_row(session, group_id)

    members = list(
        (
            await session.execute(
                select(LmsUserModel)
                .join(LmsGroupMemberModel, LmsGroupMemberModel.user_id == LmsUserModel.id)
                .where(LmsGroupMemberModel.group_id == group_id)
            )
        ).scalars()
    )
    member_ids = {u.id for u in members}
    member_emails = {u.email.lower() for u in members}

    domains = group_domains(
        [u.email for u in members], group.blocked_domains or [], group.custom_domains or []
    )

    potential: list[LmsUser] = []
    if domains:
        email = func.lower(LmsUserModel.email)
        candidates = await session.execute(
            select(LmsUserModel)
            .where(
                LmsUserModel.status == UserStatus.ACTIVE.value,
                or_(*(email.like(f"%@{domain}") for domain in domains)),
            )
            .order_by(email)
        )
        potential = [
            LmsUser.model_validate(u)
            for u in candidates.scalars()
            if u.id not in member_ids and not is_excluded_domain(extract_domain(u.email))
        ]

    missing_contacts: list[Contact] = []
    lookup_failed: list[str] = []
    if group.partner_id is not None:
        contacts = (
            await session.execute(
                select(ContactModel)
                .where(ContactModel.partner_id == group.partner_id)
                .order_by(ContactModel.email)
            )
        ).scalars()
        local_emails = set(
            (await session.execute(select(func.lower(LmsUserModel.email)))).scalars()
        )
        for contact in contacts:
            if contact.email.strip().lower() in member_emails:
                continue
            if not await _contact_in_lms(contact, local_emails, client, lookup_failed):
                missing_contacts.append(Contact.model_validate(contact))

    return GroupAnalysis(
        group_id=group.id,
        group_name=group.name,
        partner_id=group.partner_id,
        member_count=len(members),
        domains=domains,
        potential_users=potential,
        crm_contacts_not_in_lms=missing_contacts,
        lookup_failed=lookup_failed,
        analyzed_at=utcnow(),
    )


async def record_analysis(
    session: AsyncSession,
    group_id: str,
    analysis: GroupAnalysis,
    total_npcu: int | None = None,
) -> LmsGroup:
    """
    Persist an analysis summary on the group.

    Stores the potential-user count, the group's total NPCU (computed from
    its members when not given) and the analysis time.

    Raises:
        GroupNotFoundError: If the group does not exist
        ValueError: If the analysis belongs to another group
    """
    if analysis.group_id != group_id:
        raise ValueError(f"Analysis is for group {analysis.group_id}, not {group_id}")

    group = await get_group_row(session, group_id)
    if total_npcu is None:
        total_npcu = await group_npcu(session, group_id)

    group.potential_users = len(analysis.potential_users)
    group.total_npcu = total_npcu
    group.last_analyzed = analysis.analyzed_at
    await session.flush()
    return LmsGroup.model_validate(group)


# ============================================================================
# Merge
# ============================================================================


async def merge_groups(
    session: AsyncSession,
    client: LmsApi,
    target_id: str,
    source_ids: Sequence[str],
) -> MergeResult:
    """
    Move every member of the source groups into the target, then delete
    the sources.

    Best effort: a failed user or group is recorded in ``errors`` and the
    merge carries on. A source group with failed moves is not deleted.

    Raises:
        GroupNotFoundError: If the target group does not exist
    """
    await get_group_row(session, target_id)
    result = MergeResult(target_group_id=target_id)
    target_members = set(await get_group_member_ids(session, target_id))

    for source_id in dict.fromkeys(source_ids):
        if source_id == target_id:
            result.errors.append(
                {"group_id": source_id, "error": "Cannot merge a group into itself"}
            )
            continue
        try:
            await get_group_row(session, source_id)
        except GroupNotFoundError as e:
            result.errors.append({"group_id": source_id, "error": str(e)})
            continue

        move_failed = False
        for user_id in await get_group_member_ids(session, source_id):
            if user_id in target_members:
                continue
            outcome, error = await add_user_to_group(session, client, target_id, user_id)
            if outcome == MemberChange.FAILED:
                move_failed = True
                result.errors.append(
                    {"group_id": source_id, "user_id": user_id, "error": error or "add failed"}
                )
                continue
            target_members.add(user_id)
            result.users_moved += 1

        if move_failed:
            result.errors.append(
                {"group_id": source_id, "error": "Not deleted: some members were not moved"}
            )
            continue

        try:
            await delete_group(session, client, source_id)
        except LMS_ERRORS as e:
            result.errors.append({"group_id": source_id, "error": f"Delete failed: {e}"})
            continue
        result.groups_deleted += 1

    logger.info(
        "Merged %d groups into %s: %d users moved, %d errors",
        result.groups_deleted,
        target_id,
        result.users_moved,
        len(result.errors),
    )
    return result


# ============================================================================
# Contact links
# ============================================================================


async def link_contacts_to_lms_users(session: AsyncSession) -> int:
    """
    Link CRM contacts and LMS users that share an email (case-insensitive).

    Sets both contacts.lms_user_id and lms_users.contact_id.

    Returns:
        Number of contacts whose link changed
    """
    users = {
        u.email.lower(): u
        for u in (
            await session.execute(
                select(LmsUserModel).where(LmsUserModel.status != UserStatus.DELETED.value)
            )
        ).scalars()
    }
    contacts = (await session.execute(select(ContactModel).order_by(ContactModel.id))).scalars()

    linked = 0
    for contact in contacts:
        user = users.get(contact.email.strip().lower())
        if user is None:
            continue
        if contact.lms_user_id != user.id or user.contact_id != contact.id:
            contact.lms_user_id = user.id
            user.contact_id = contact.id
            linked += 1

    await session.flush()
    if linked:
        logger.info("Linked %d contacts to LMS users", linked)
    return linked
