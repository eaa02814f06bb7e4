"""
Tests for NPCU and tier compliance.
"""

from datetime import datetime

import pytest
from dateutil.relativedelta import relativedelta

from partner_sync.services.compliance import (
    PartnerNotFoundError,
    compliance_gap,
    compute_gap,
    effective_expiry,
    get_tier_requirements,
    group_npcu,
    is_valid_certification,
    partner_compliance_report,
    partner_npcu,
    required_npcu,
    update_tier_requirements,
)

NOW = datetime(2025, 6, 1, 12, 0)


def _months_ago(months: int) -> datetime:
    return NOW - relativedelta(months=months)


async def _certified_partner(
    seed, name="Acme", tier="Select", email="jane@acme.com", user_id="p1"
):
    partner = await seed.partner(name, tier=tier)
    contact = await seed.contact(email, partner_id=partner.id)
    await seed.user(user_id, email, contact_id=contact.id)
    return partner


# ============================================================================
# Validity
# ============================================================================


def test_effective_expiry_prefers_lms_expiry(settings):
    completed = _months_ago(1)
    expires = NOW + relativedelta(days=3)

    assert effective_expiry(completed, expires, "nintex_k2", settings) == expires
    default_window = effective_expiry(completed, None, "nintex_k2", settings)
    gtm_window = effective_expiry(completed, None, "go_to_market", settings)
    assert default_window == completed + relativedelta(months=24)
    assert gtm_window == completed + relativedelta(months=12)
    assert effective_expiry(None, None, None, settings) is None


def test_validity_windows(settings):
    assert is_valid_certification(1, _months_ago(23), None, "nintex_k2", NOW, settings)
    assert not is_valid_certification(1, _months_ago(25), None, "nintex_k2", NOW, settings)
    assert is_valid_certification(1, _months_ago(11), None, "go_to_market", NOW, settings)
    assert not is_valid_certification(1, _months_ago(13), None, "go_to_market", NOW, settings)


def test_non_certifications_never_valid(settings):
    assert not is_valid_certification(0, _months_ago(1), None, None, NOW, settings)
    assert not is_valid_certification(2, None, None, None, NOW, settings)


def test_expired_lms_expiry_overrides_window(settings):
    assert not is_valid_certification(
        2, _months_ago(1), NOW - relativedelta(days=1), "nintex_k2", NOW, settings
    )


# ============================================================================
# Tier requirements
# ============================================================================


def test_required_npcu_lookup():
    requirements = {"Select": 15, "Premier": 20}

    assert required_npcu("select", requirements) == 15
    assert required_npcu(" Premier ", requirements) == 20
    assert required_npcu("Platinum", requirements) == 0
    assert required_npcu(None, requirements) == 0


def test_compute_gap_never_negative():
    assert compute_gap(10, 15) == 5
    assert compute_gap(20, 15) == 0


@pytest.mark.asyncio
async def test_tier_requirements_default_and_update(async_session, settings):
    defaults = await get_tier_requirements(async_session, settings)
    assert defaults == settings.default_tier_requirements

    merged = await update_tier_requirements(async_session, {"Select": 12, "Gold": 8})

    assert merged["Select"] == 12
    assert merged["Gold"] == 8
    assert merged["Premier"] == 20
    assert await get_tier_requirements(async_session) == merged

    replaced = await update_tier_requirements(async_session, {"Gold": 3}, replace=True)

    assert replaced == {"Gold": 3}


@pytest.mark.asyncio
async def test_tier_requirements_validation(async_session):
    with pytest.raises(ValueError, match="cannot be negative"):
        await update_tier_requirements(async_session, {"Select": -1})
    with pytest.raises(ValueError, match="cannot be empty"):
        await update_tier_requirements(async_session, {" ": 5})


# ============================================================================
# NPCU
# ============================================================================


@pytest.mark.asyncio
async def test_partner_npcu_counts_only_valid_certifications(async_session, seed, settings):
    """Test 5 + 10 valid NPCU with an expired 20 NPCU certification totals 15."""
    partner = await _certified_partner(seed)
    await seed.course("c5", "Cert Five", npcu=5, category="nintex_k2")
    await seed.course("c10", "Cert Ten", npcu=10, category="nintex_k2")
    await seed.course("c20", "Cert Twenty", npcu=20, category="nintex_k2")
    await seed.course("c0", "Intro", npcu=0)
    await seed.enrollment("e1", "p1", "c5", completed_at=_months_ago(2))
    await seed.enrollment("e2", "p1", "c10", completed_at=_months_ago(6))
    await seed.enrollment("e3", "p1", "c20", completed_at=_months_ago(30))
    await seed.enrollment("e4", "p1", "c0", completed_at=_months_ago(1))
    await seed.enrollment("e5", "p1", "c5")

    assert await partner_npcu(async_session, partner.id, NOW, settings) == 15


@pytest.mark.asyncio
async def test_repeat_completions_all_count(async_session, seed, settings):
    partner = await _certified_partner(seed)
    await seed.course("c1", "K2 Cert", npcu=2, category="nintex_k2")
    await seed.enrollment("e1", "p1", "c1", completed_at=_months_ago(1))
    await seed.enrollment("e2", "p1", "c1", completed_at=_months_ago(3))

    assert await partner_npcu(async_session, partner.id, NOW, settings) == 4


@pytest.mark.asyncio
async def test_go_to_market_window_is_shorter(async_session, seed, settings):
    partner = await _certified_partner(seed)
    await seed.course("gtm", "GTM Essentials", npcu=1, category="go_to_market")
    await seed.course("k2", "K2 Cert", npcu=1, category="nintex_k2")
    await seed.enrollment("e1", "p1", "gtm", completed_at=_months_ago(13))
    await seed.enrollment("e2", "p1", "k2", completed_at=_months_ago(13))

    assert await partner_npcu(async_session, partner.id, NOW, settings) == 1


@pytest.mark.asyncio
async def test_users_without_partner_contact_do_not_count(async_session, seed, settings):
    partner = await _certified_partner(seed)
    await seed.user("p-free", "free@acme.com")
    await seed.course("c1", "K2 Cert", npcu=2)
    await seed.enrollment("e1", "p-free", "c1", completed_at=_months_ago(1))

    assert await partner_npcu(async_session, partner.id, NOW, settings) == 0


@pytest.mark.asyncio
async def test_partner_npcu_unknown_partner(async_session):
    with pytest.raises(PartnerNotFoundError):
        await partner_npcu(async_session, 999)


@pytest.mark.asyncio
async def test_compliance_gap(async_session, seed, settings):
    """Test that a Premier partner with 15 NPCU is 5 short; Select is compliant."""
    premier = await _certified_partner(seed, "Premier Co", "Premier", "a@premier.com", "p1")
    select_partner = await _certified_partner(seed, "Select Co", "Select", "b@select.com", "p2")
    await seed.course("c15", "K2 Big Cert", npcu=15, category="nintex_k2")
    await seed.course("gtm", "GTM Cert", npcu=1, category="go_to_market")
    await seed.enrollment("e1", "p1", "c15", completed_at=_months_ago(1))
    await seed.enrollment("e2", "p2", "c15", completed_at=_months_ago(1))
    await seed.enrollment("e3", "p2", "gtm", completed_at=_months_ago(1))

    gap = await compliance_gap(async_session, premier.id, NOW, settings)

    assert (gap.current, gap.required, gap.gap) == (15, 20, 5)
    assert not gap.compliant
    assert gap.certifications == 1
    assert gap.by_category == {"nintex_k2": 1}

    select_gap = await compliance_gap(async_session, select_partner.id, NOW, settings)

    assert (select_gap.current, select_gap.required, select_gap.gap) == (16, 15, 0)
    assert select_gap.compliant
    assert select_gap.by_category == {"nintex_k2": 1, "go_to_market": 1}


@pytest.mark.asyncio
async def test_unknown_tier_requires_nothing(async_session, seed, settings):
    partner = await _certified_partner(seed, tier="Mystery")

    gap = await compliance_gap(async_session, partner.id, NOW, settings)

    assert (gap.current, gap.required, gap.gap) == (0, 0, 0)
    assert gap.compliant


@pytest.mark.asyncio
async def test_compliance_report_sorted_by_gap(async_session, seed, settings):
    await _certified_partner(seed, "Beta", "Premier", "b@beta.com", "p1")
    await _certified_partner(seed, "Alpha", "Premier", "a@alpha.com", "p2")
    await _certified_partner(seed, "Gamma", "Registered", "g@gamma.com", "p3")
    await seed.course("c1", "K2 Cert", npcu=2, category="nintex_k2")
    await seed.enrollment("e1", "p3", "c1", completed_at=_months_ago(1))

    report = await partner_compliance_report(async_session, now=NOW, settings=settings)

    assert [(r.account_name, r.gap) for r in report] == [("Alpha", 20), ("Beta", 20), ("Gamma", 3)]

    premier_only = await partner_compliance_report(async_session, "Premier", NOW, settings)

    assert [r.account_name for r in premier_only] == ["Alpha", "Beta"]


@pytest.mark.asyncio
async def test_group_npcu_sums_members(async_session, seed, settings):
    await seed.user("p1", "jane@acme.com")
    await seed.user("p2", "bob@acme.com")
    await seed.user("p3", "out@acme.com")
    await seed.group("g1", "ptr_Acme")
    await seed.member("g1", "p1")
    await seed.member("g1", "p2")
    await seed.course("c1", "K2 Cert", npcu=2, category="nintex_k2")
    await seed.enrollment("e1", "p1", "c1", completed_at=_months_ago(1))
    await seed.enrollment("e2", "p2", "c1", completed_at=_months_ago(30))
    await seed.enrollment("e3", "p3", "c1", completed_at=_months_ago(1))

    assert await group_npcu(async_session, "g1", NOW, settings) == 2
