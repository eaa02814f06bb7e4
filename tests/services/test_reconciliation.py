"""
Tests for group/partner reconciliation and group analysis.
"""

import pytest
from sqlalchemy import select

from partner_sync.lms.client import LmsTransientError
from partner_sync.models import (
    ContactModel,
    LmsGroupMemberModel,
    LmsGroupModel,
    LmsUserModel,
    PendingSource,
    UserStatus,
)
from partner_sync.services.reconciliation import (
    GroupNotFoundError,
    PartnerNotFoundError,
    add_blocked_domain,
    add_custom_domain,
    analyze_group,
    auto_match_groups,
    get_domain_settings,
    group_domains,
    link_contacts_to_lms_users,
    link_group_to_partner,
    match_group_to_partner,
    merge_groups,
    partners_without_groups,
    record_analysis,
    remove_blocked_domain,
    remove_custom_domain,
    unlink_group,
)

# ============================================================================
# Matching
# ============================================================================


@pytest.mark.asyncio
async def test_match_group_exact(async_session, seed, settings):
    acme = await seed.partner("Acme Inc.")
    await seed.partner("Acme Holdings")
    await seed.group("g1", "ptr_ACME INC")

    result = await match_group_to_partner(async_session, "g1", settings)

    assert result.exact_match.id == acme.id
    assert result.close_matches == []


@pytest.mark.asyncio
async def test_match_group_close_matches(async_session, seed, settings):
    await seed.partner("Blue Sky")
    await seed.partner("Blue Sky Consulting")
    await seed.partner("Red Ocean")
    await seed.group("g1", "ptr_Blue Sky Group")

    result = await match_group_to_partner(async_session, "g1", settings)

    assert result.exact_match is None
    names = [m.partner.account_name for m in result.close_matches]
    assert names == ["Blue Sky", "Blue Sky Consulting"]


@pytest.mark.asyncio
async def test_match_unknown_group(async_session, settings):
    with pytest.raises(GroupNotFoundError):
        await match_group_to_partner(async_session, "missing", settings)


@pytest.mark.asyncio
async def test_auto_match_groups(async_session, seed, settings):
    """Test exact and strong fuzzy links, skipping system and weak matches."""
    acme = await seed.partner("Acme")
    northwind = await seed.partner("Northwind Traders")
    await seed.partner("Blue Sky")
    other = await seed.partner("Other")
    await seed.group("g-acme", "ptr_Acme")
    await seed.group("g-nw", "Northwind Traders EU")
    await seed.group("g-blue", "Blue Sky Group")
    await seed.group("g-all", "All Partners")
    await seed.group("g-linked", "ptr_Acme Old", partner_id=other.id)
    await seed.group("g-off", "Acme", is_active=False)

    report = await auto_match_groups(async_session, settings=settings)

    assert report.matched == 2
    assert report.skipped == 2
    by_group = {m.group_id: m for m in report.matches}
    assert by_group["g-acme"].exact
    assert by_group["g-acme"].partner_id == acme.id
    assert not by_group["g-nw"].exact
    assert by_group["g-nw"].partner_id == northwind.id
    assert (await async_session.get(LmsGroupModel, "g-acme")).partner_id == acme.id
    assert (await async_session.get(LmsGroupModel, "g-blue")).partner_id is None
    assert (await async_session.get(LmsGroupModel, "g-linked")).partner_id == other.id
    assert (await async_session.get(LmsGroupModel, "g-off")).partner_id is None


@pytest.mark.asyncio
async def test_auto_match_dry_run_and_min_score(async_session, seed, settings):
    blue = await seed.partner("Blue Sky")
    await seed.group("g-blue", "Blue Sky Group")

    dry = await auto_match_groups(async_session, min_score=0.5, dry_run=True, settings=settings)

    assert dry.dry_run
    assert dry.matched == 1
    assert (await async_session.get(LmsGroupModel, "g-blue")).partner_id is None

    await auto_match_groups(async_session, min_score=0.5, settings=settings)

    assert (await async_session.get(LmsGroupModel, "g-blue")).partner_id == blue.id


@pytest.mark.asyncio
async def test_link_and_unlink(async_session, seed):
    acme = await seed.partner("Acme")
    await seed.group("g1", "Whatever")

    linked = await link_group_to_partner(async_session, "g1", acme.id)
    assert linked.partner_id == acme.id
    assert await partners_without_groups(async_session) == []

    unlinked = await unlink_group(async_session, "g1")
    assert unlinked.partner_id is None
    assert [p.account_name for p in await partners_without_groups(async_session)] == ["Acme"]

    with pytest.raises(PartnerNotFoundError):
        await link_group_to_partner(async_session, "g1", 12345)


# ============================================================================
# Domains
# ============================================================================


def test_group_domains():
    emails = ["a@Acme.com", "b@acme.com", "c@gmail.com", "d@acme.co.uk", "broken"]

    assert group_domains(emails) == ["acme.co.uk", "acme.com"]
    assert group_domains(emails, blocked=["ACME.co.uk"]) == ["acme.com"]
    assert group_domains(emails, custom=["acme.de"]) == ["acme.co.uk", "acme.com", "acme.de"]
    assert group_domains([], custom=["acme.de"], blocked=["acme.de"]) == []


@pytest.mark.asyncio
async def test_domain_overrides(async_session, seed):
    await seed.group("g1", "ptr_Acme")

    await add_blocked_domain(async_session, "g1", " Partner-Mail.COM ")
    await add_blocked_domain(async_session, "g1", "partner-mail.com")
    await add_custom_domain(async_session, "g1", "acme.de")
    domains = await get_domain_settings(async_session, "g1")

    assert domains.blocked_domains == ["partner-mail.com"]
    assert domains.custom_domains == ["acme.de"]

    await remove_blocked_domain(async_session, "g1", "PARTNER-MAIL.com")
    domains = await remove_custom_domain(async_session, "g1", "acme.de")

    assert domains.blocked_domains == []
    assert domains.custom_domains == []

    with pytest.raises(ValueError, match="cannot be empty"):
        await add_custom_domain(async_session, "g1", "  ")


# ============================================================================
# Analysis
# ============================================================================


async def _analysis_fixture(seed):
    acme = await seed.partner("Acme", tier="Select")
    await seed.group("g1", "ptr_Acme", partner_id=acme.id)
    await seed.user("p1", "jane@acme.com")
    await seed.user("p2", "joe@gmail.com")
    await seed.member("g1", "p1")
    await seed.member("g1", "p2")
    await seed.user("p3", "new@acme.com")
    await seed.user("p4", "gone@acme.com", status=UserStatus.DEACTIVATED)
    await seed.user("p5", "x@other.com")
    await seed.user("p6", "Upper@ACME.com")
    await seed.user("p7", "someone@gmail.com")
    await seed.contact("jane@acme.com", partner_id=acme.id)
    await seed.contact("new@acme.com", partner_id=acme.id)
    await seed.contact("nolms@acme.com", partner_id=acme.id)
    await seed.contact("remote@acme.com", partner_id=acme.id)
    await seed.contact("flaky@acme.com", partner_id=acme.id)
    await seed.contact("other@acme.com")
    return acme


@pytest.mark.asyncio
async def test_analyze_group_finds_potential_users_and_missing_contacts(async_session, seed):
    """Test domain-based potential users and CRM contacts missing from the LMS."""
    acme = await _analysis_fixture(seed)

    analysis = await analyze_group(async_session, "g1")

    assert analysis.partner_id == acme.id
    assert analysis.member_count == 2
    assert analysis.domains == ["acme.com"]
    assert [u.id for u in analysis.potential_users] == ["p3", "p6"]
    missing = [c.email for c in analysis.crm_contacts_not_in_lms]
    assert missing == ["flaky@acme.com", "nolms@acme.com", "remote@acme.com"]
    assert analysis.lookup_failed == []


@pytest.mark.asyncio
async def test_analyze_group_with_lms_lookups(async_session, seed, fake_lms):
    """Test upstream lookups, where a failed lookup counts as absent and is reported."""
    await _analysis_fixture(seed)
    fake_lms.add_person("remote-id", "remote@acme.com")
    unreachable = LmsTransientError("/v2/people", OSError("timed out"))
    fake_lms.fail("find_person_by_email", "flaky@acme.com", unreachable)

    analysis = await analyze_group(async_session, "g1", fake_lms)

    missing = [c.email for c in analysis.crm_contacts_not_in_lms]
    assert missing == ["flaky@acme.com", "nolms@acme.com"]
    assert analysis.lookup_failed == ["flaky@acme.com"]


@pytest.mark.asyncio
async def test_analyze_group_respects_domain_overrides(async_session, seed):
    await _analysis_fixture(seed)
    await seed.user("p8", "sam@acme.de")
    await add_blocked_domain(async_session, "g1", "acme.com")
    await add_custom_domain(async_session, "g1", "acme.de")

    analysis = await analyze_group(async_session, "g1")

    assert analysis.domains == ["acme.de"]
    assert [u.id for u in analysis.potential_users] == ["p8"]


@pytest.mark.asyncio
async def test_analyze_unlinked_group_lists_no_contacts(async_session, seed):
    await seed.group("g1", "Loose Group")
    await seed.user("p1", "a@acme.com")
    await seed.member("g1", "p1")
    await seed.contact("b@acme.com")

    analysis = await analyze_group(async_session, "g1")

    assert analysis.crm_contacts_not_in_lms == []
    assert analysis.potential_users == []


@pytest.mark.asyncio
async def test_analyze_group_is_read_only(async_session, seed):
    await _analysis_fixture(seed)

    await analyze_group(async_session, "g1")

    group = await async_session.get(LmsGroupModel, "g1")
    assert group.potential_users is None
    assert group.last_analyzed is None


@pytest.mark.asyncio
async def test_record_analysis(async_session, seed):
    await _analysis_fixture(seed)
    analysis = await analyze_group(async_session, "g1")

    group = await record_analysis(async_session, "g1", analysis)

    assert group.potential_users == 2
    assert group.total_npcu == 0
    assert group.last_analyzed == analysis.analyzed_at

    with pytest.raises(ValueError, match="not g2"):
        await record_analysis(async_session, "g2", analysis)


# ============================================================================
# Merge
# ============================================================================


@pytest.mark.asyncio
async def test_merge_groups(async_session, seed, fake_lms):
    """Test moving members, deleting clean sources and keeping failed ones."""
    for user_id in ("p1", "p2", "p3"):
        await seed.user(user_id, f"{user_id}@acme.com")
    await seed.group("g1", "ptr_Acme")
    await seed.group("g2", "ptr_Acme Duplicate")
    await seed.group("g3", "ptr_Acme Old")
    await seed.member("g1", "p1")
    await seed.member("g2", "p1")
    await seed.member("g2", "p2")
    await seed.member("g3", "p3")
    fake_lms.add_group("g1", "ptr_Acme", members=["p1"])
    fake_lms.add_group("g2", "ptr_Acme Duplicate", members=["p1", "p2"])
    fake_lms.add_group("g3", "ptr_Acme Old", members=["p3"])
    fake_lms.fail("add_group_member", "p3")

    result = await merge_groups(async_session, fake_lms, "g1", ["g2", "g3", "missing", "g1"])

    assert result.users_moved == 1
    assert result.groups_deleted == 1
    assert await async_session.get(LmsGroupModel, "g2") is None
    assert await async_session.get(LmsGroupModel, "g3") is not None
    errors = {(e["group_id"], e.get("user_id")) for e in result.errors}
    assert errors == {("g3", "p3"), ("g3", None), ("missing", None), ("g1", None)}

    rows = await async_session.execute(
        select(LmsGroupMemberModel.user_id, LmsGroupMemberModel.pending_source).where(
            LmsGroupMemberModel.group_id == "g1"
        )
    )
    assert dict(rows.all()) == {"p1": PendingSource.API.value, "p2": PendingSource.LOCAL.value}


@pytest.mark.asyncio
async def test_merge_into_unknown_target(async_session, fake_lms):
    with pytest.raises(GroupNotFoundError):
        await merge_groups(async_session, fake_lms, "missing", ["g2"])


# ============================================================================
# Contact links
# ============================================================================


@pytest.mark.asyncio
async def test_link_contacts_to_lms_users(async_session, seed):
    contact = await seed.contact("Jane@Acme.com")
    await seed.contact("nobody@acme.com")
    gone_contact = await seed.contact("gone@acme.com")
    await seed.user("p1", "jane@acme.com")
    await seed.user("p2", "gone@acme.com", status=UserStatus.DELETED)

    assert await link_contacts_to_lms_users(async_session) == 1
    assert await link_contacts_to_lms_users(async_session) == 0

    assert (await async_session.get(ContactModel, contact.id)).lms_user_id == "p1"
    assert (await async_session.get(LmsUserModel, "p1")).contact_id == contact.id
    assert (await async_session.get(ContactModel, gone_contact.id)).lms_user_id is None
