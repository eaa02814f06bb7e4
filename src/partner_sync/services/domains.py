"""
Email domain classification.

Public and personal mail providers say nothing about which organisation a
learner belongs to, so they are excluded from group domain analysis.
"""

from collections.abc import Iterable

# Versioned list of public/personal mail providers. Extend at runtime with
# extend_excluded_domains(); never edit in place from callers.
EXCLUDED_DOMAINS_VERSION = 1

EXCLUDED_EMAIL_DOMAINS: frozenset[str] = frozenset(
    {
        # Google
        "gmail.com",
        "googlemail.com",
        # Microsoft
        "hotmail.com",
        "hotmail.co.uk",
        "hotmail.fr",
        "hotmail.de",
        "hotmail.it",
        "hotmail.es",
        "outlook.com",
        "outlook.co.uk",
        "outlook.fr",
        "outlook.de",
        "live.com",
        "live.co.uk",
        "live.fr",
        "live.de",
        "msn.com",
        # Yahoo
        "yahoo.com",
        "yahoo.co.uk",
        "yahoo.fr",
        "yahoo.de",
        "yahoo.it",
        "yahoo.es",
        "yahoo.ca",
        "yahoo.com.au",
        "yahoo.co.in",
        "ymail.com",
        "rocketmail.com",
        # Apple
        "icloud.com",
        "me.com",
        "mac.com",
        # AOL
        "aol.com",
        "aim.com",
        # Other webmail
        "protonmail.com",
        "proton.me",
        "zoho.com",
        "mail.com",
        "gmx.com",
        "gmx.net",
        "gmx.de",
        "web.de",
        "freenet.de",
        "t-online.de",
        "orange.fr",
        "wanadoo.fr",
        "laposte.net",
        # ISPs
        "comcast.net",
        "verizon.net",
        "att.net",
        "sbcglobal.net",
        "cox.net",
        "charter.net",
        # Disposable
        "mailinator.com",
        "guerrillamail.com",
        "tempmail.com",
        "10minutemail.com",
    }
)

_extra_excluded: set[str] = set()


def normalize_domain(domain: str | None) -> str:
    return (domain or "").strip().lower()


def extract_domain(email: str | None) -> str | None:
    """Return the lower-cased domain part of an email address, or None."""
    if not email or "@" not in email:
        return None
    domain = normalize_domain(email.rsplit("@", 1)[1])
    return domain or None


def is_excluded_domain(domain: str | None) -> bool:
    """
    True if the domain is a public/personal provider.

    A missing or empty domain is always excluded.
    """
    domain = normalize_domain(domain)
    if not domain:
        return True
    return domain in EXCLUDED_EMAIL_DOMAINS or domain in _extra_excluded


def extend_excluded_domains(domains: Iterable[str]) -> None:
    """Add domains to the exclusion list for this process."""
    _extra_excluded.update(d for d in (normalize_domain(x) for x in domains) if d)


def reset_excluded_domains() -> None:
    """Drop every domain added through extend_excluded_domains()."""
    _extra_excluded.clear()


def excluded_domains() -> frozenset[str]:
    return EXCLUDED_EMAIL_DOMAINS | frozenset(_extra_excluded)
