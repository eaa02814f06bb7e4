"""
NPCU and tier compliance.

A completion counts toward a partner's NPCU while it is a certification
(npcu_value > 0), has a completed_at and has not expired. Expiry is the
enrollment's own expires_at when the LMS provides one, otherwise
completed_at plus the validity window of the course's certification
category (24 months by default, 12 for go-to-market).
"""

import logging
from collections.abc import Iterable
from datetime import datetime

from dateutil.relativedelta import relativedelta
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from partner_sync.models import (
    SINGLETON_ID,
    ContactModel,
    LmsCourseModel,
    LmsEnrollmentModel,
    LmsGroupMemberModel,
    LmsUserModel,
    PartnerModel,
    PortalSettingsModel,
    utcnow,
)
from partner_sync.settings import Settings, get_settings

logger = logging.getLogger(__name__)


class PartnerNotFoundError(Exception):
    """Raised when a partner does not exist."""

    pass


class ComplianceGap(BaseModel):
    """NPCU standing of one partner against its tier requirement."""

    partner_id: int
    account_name: str
    partner_tier: str | None = None
    current: int
    required: int
    gap: int
    certifications: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)

    @property
    def compliant(self) -> bool:
        return self.gap == 0


# ============================================================================
# Validity
# ============================================================================


def validity_months(category: str | None, settings: Settings | None = None) -> int:
    settings = settings or get_settings()
    if category and category in settings.cert_category_validity_months:
        return settings.cert_category_validity_months[category]
    return settings.cert_validity_months


def effective_expiry(
    completed_at: datetime | None,
    expires_at: datetime | None,
    category: str | None = None,
    settings: Settings | None = None,
) -> datetime | None:
    """When a completion stops counting; None if it was never completed."""
    if expires_at is not None:
        return expires_at
    if completed_at is None:
        return None
    return completed_at + relativedelta(months=validity_months(category, settings))


def is_valid_certification(
    npcu_value: int,
    completed_at: datetime | None,
    expires_at: datetime | None,
    category: str | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> bool:
    if npcu_value <= 0 or completed_at is None:
        return False
    expiry = effective_expiry(completed_at, expires_at, category, settings)
    return expiry is not None and expiry > (now or utcnow())


def _certification_rows_query():
    return (
        select(
            ContactModel.partner_id,
            LmsCourseModel.npcu_value,
            LmsCourseModel.certification_category,
            LmsEnrollmentModel.completed_at,
            LmsEnrollmentModel.expires_at,
        )
        .join(LmsUserModel, LmsUserModel.contact_id == ContactModel.id)
        .join(LmsEnrollmentModel, LmsEnrollmentModel.user_id == LmsUserModel.id)
        .join(LmsCourseModel, LmsCourseModel.id == LmsEnrollmentModel.course_id)
        .where(
            ContactModel.partner_id.is_not(None),
            LmsCourseModel.npcu_value > 0,
            LmsEnrollmentModel.completed_at.is_not(None),
        )
    )


def _tally(
    rows: Iterable, now: datetime, settings: Settings
) -> dict[int, tuple[int, int, dict[str, int]]]:
    """Sum valid NPCU per partner: {partner_id: (npcu, certifications, by_category)}."""
    totals: dict[int, tuple[int, int, dict[str, int]]] = {}
    for partner_id, npcu, category, completed_at, expires_at in rows:
        if not is_valid_certification(npcu, completed_at, expires_at, category, now, settings):
            continue
        current, count, by_category = totals.get(partner_id, (0, 0, {}))
        key = category or "uncategorized"
        by_category[key] = by_category.get(key, 0) + 1
        totals[partner_id] = (current + npcu, count + 1, by_category)
    return totals


# ============================================================================
# Tier requirements
# ============================================================================


async def get_tier_requirements(
    session: AsyncSession, settings: Settings | None = None
) -> dict[str, int]:
    """Tier -> required NPCU, from portal settings or the configured defaults."""
    settings = settings or get_settings()
    row = await session.get(PortalSettingsModel, SINGLETON_ID)
    if row is None or not row.tier_requirements:
        return dict(settings.default_tier_requirements)
    return dict(row.tier_requirements)


async def update_tier_requirements(
    session: AsyncSession,
    requirements: dict[str, int],
    replace: bool = False,
    settings: Settings | None = None,
) -> dict[str, int]:
    """
    Set required NPCU per tier.

    Args:
        session: Database session
        requirements: Tier name -> required NPCU (non-negative)
        replace: Replace the whole mapping instead of merging into it
        settings: Settings override

    Returns:
        The stored mapping

    Raises:
        ValueError: If a tier name is empty or a requirement is negative
    """
    for tier, required in requirements.items():
        if not tier.strip():
            raise ValueError("Tier name cannot be empty")
        if int(required) < 0:
            raise ValueError(f"Required NPCU for {tier!r} cannot be negative")

    current = {} if replace else await get_tier_requirements(session, settings)
    current.update({tier.strip(): int(required) for tier, required in requirements.items()})

    row = await session.get(PortalSettingsModel, SINGLETON_ID)
    if row is None:
        row = PortalSettingsModel(id=SINGLETON_ID, tier_requirements=current)
        session.add(row)
    else:
        row.tier_requirements = current
    await session.flush()

    logger.info("Tier requirements updated: %s", current)
    return current


def required_npcu(tier: str | None, requirements: dict[str, int]) -> int:
    """Required NPCU for a tier (case-insensitive); unknown tiers require 0."""
    if not tier:
        return 0
    lowered = {name.lower(): value for name, value in requirements.items()}
    return lowered.get(tier.strip().lower(), 0)


# ============================================================================
# NPCU
# ============================================================================


async def _get_partner(session: AsyncSession, partner_id: int) -> PartnerModel:
    partner = await session.get(PartnerModel, partner_id)
    if partner is None:
        raise PartnerNotFoundError(f"Partner {partner_id} does not exist")
    return partner


async def partner_npcu(
    session: AsyncSession,
    partner_id: int,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> int:
    """
    Total NPCU of a partner's valid certifications.

    Every valid completion counts, including repeat completions of the same
    course by the same user.

    Raises:
        PartnerNotFoundError: If the partner does not exist
    """
    settings = settings or get_settings()
    await _get_partner(session, partner_id)

    rows = await session.execute(
        _certification_rows_query().where(ContactModel.partner_id == partner_id)
    )
    totals = _tally(rows.all(), now or utcnow(), settings)
    return totals.get(partner_id, (0, 0, {}))[0]


async def group_npcu(
    session: AsyncSession,
    group_id: str,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> int:
    """Total NPCU of valid certifications held by a group's members."""
    settings = settings or get_settings()
    rows = await session.execute(
        select(
            LmsCourseModel.npcu_value,
            LmsCourseModel.certification_category,
            LmsEnrollmentModel.completed_at,
            LmsEnrollmentModel.expires_at,
        )
        .join(LmsEnrollmentModel, LmsEnrollmentModel.course_id == LmsCourseModel.id)
        .join(LmsGroupMemberModel, LmsGroupMemberModel.user_id == LmsEnrollmentModel.user_id)
        .where(
            LmsGroupMemberModel.group_id == group_id,
            LmsCourseModel.npcu_value > 0,
            LmsEnrollmentModel.completed_at.is_not(None),
        )
    )
    now = now or utcnow()
    return sum(
        npcu
        for npcu, category, completed_at, expires_at in rows.all()
        if is_valid_certification(npcu, completed_at, expires_at, category, now, settings)
    )


def compute_gap(current: int, required: int) -> int:
    return max(required - current, 0)


async def compliance_gap(
    session: AsyncSession,
    partner_id: int,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> ComplianceGap:
    """
    Compare a partner's NPCU with its tier requirement.

    Raises:
        PartnerNotFoundError: If the partner does not exist
    """
    settings = settings or get_settings()
    partner = await _get_partner(session, partner_id)
    requirements = await get_tier_requirements(session, settings)

    rows = await session.execute(
        _certification_rows_query().where(ContactModel.partner_id == partner_id)
    )
    current, count, by_category = _tally(rows.all(), now or utcnow(), settings).get(
        partner_id, (0, 0, {})
    )
    required = required_npcu(partner.partner_tier, requirements)

    return ComplianceGap(
        partner_id=partner.id,
        account_name=partner.account_name,
        partner_tier=partner.partner_tier,
        current=current,
        required=required,
        gap=compute_gap(current, required),
        certifications=count,
        by_category=by_category,
    )


async def partner_compliance_report(
    session: AsyncSession,
    tier: str | None = None,
    now: datetime | None = None,
    settings: Settings | None = None,
) -> list[ComplianceGap]:
    """
    Compliance of every partner (optionally one tier), largest gap first.
    """
    settings = settings or get_settings()
    requirements = await get_tier_requirements(session, settings)

    query = select(PartnerModel).order_by(PartnerModel.account_name)
    if tier:
        query = query.where(PartnerModel.partner_tier == tier)
    partners = list((await session.execute(query)).scalars())

    rows = await session.execute(_certification_rows_query())
    totals = _tally(rows.all(), now or utcnow(), settings)

    report = []
    for partner in partners:
        current, count, by_category = totals.get(partner.id, (0, 0, {}))
        required = required_npcu(partner.partner_tier, requirements)
        report.append(
            ComplianceGap(
                partner_id=partner.id,
                account_name=partner.account_name,
                partner_tier=partner.partner_tier,
                current=current,
                required=required,
                gap=compute_gap(current, required),
                certifications=count,
                by_category=by_category,
            )
        )

    report.sort(key=lambda r: (-r.gap, r.account_name.lower()))
    return report
