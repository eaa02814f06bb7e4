"""
Tests for email domain classification.
"""

import pytest

from partner_sync.services.domains import (
    EXCLUDED_EMAIL_DOMAINS,
    excluded_domains,
    extend_excluded_domains,
    extract_domain,
    is_excluded_domain,
    reset_excluded_domains,
)


@pytest.fixture(autouse=True)
def _clean_exclusions():
    reset_excluded_domains()
    yield
    reset_excluded_domains()


def test_extract_domain():
    assert extract_domain("Jane.Doe@Acme.COM") == "acme.com"
    assert extract_domain("a@b@example.org") == "example.org"
    assert extract_domain("no-at-sign") is None
    assert extract_domain("trailing@") is None
    assert extract_domain(None) is None


@pytest.mark.parametrize("domain", ["gmail.com", "GMAIL.COM", " outlook.com ", "yahoo.co.uk"])
def test_public_providers_are_excluded(domain):
    assert is_excluded_domain(domain)


@pytest.mark.parametrize("domain", [None, "", "   "])
def test_missing_domain_is_excluded(domain):
    assert is_excluded_domain(domain)


@pytest.mark.parametrize("domain", ["acme.com", "google.com", "microsoft.com"])
def test_company_domain_is_not_excluded(domain):
    """Test that corporate domains of mail providers still count as organisations."""
    assert not is_excluded_domain(domain)


def test_extend_and_reset_exclusions():
    extend_excluded_domains(["Example.NET", ""])

    assert is_excluded_domain("example.net")
    assert "example.net" in excluded_domains()
    assert "example.net" not in EXCLUDED_EMAIL_DOMAINS

    reset_excluded_domains()

    assert not is_excluded_domain("example.net")
