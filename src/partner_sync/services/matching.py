"""
Name matching between LMS groups and CRM partner accounts.

Pure functions; the database-facing match operations live in
partner_sync.services.reconciliation.
"""

import re
from collections.abc import Iterable

from pydantic import BaseModel

from partner_sync.models import PartnerSummary

_NON_ALNUM = re.compile(r"[^a-z0-9]")


class PartnerMatch(BaseModel):
    """A candidate partner with its similarity to the group name."""

    partner: PartnerSummary
    similarity: float


class MatchResult(BaseModel):
    """Outcome of matching one group name against all partners."""

    exact_match: PartnerSummary | None = None
    close_matches: list[PartnerMatch] = []


def normalize(value: str | None) -> str:
    """Lower-case and drop every non-alphanumeric character."""
    return _NON_ALNUM.sub("", (value or "").lower())


def _words(value: str) -> set[str]:
    return {w for w in (normalize(token) for token in value.split()) if w}


def similarity(a: str | None, b: str | None) -> float:
    """
    Score how alike two names are, from 0.0 to 1.0.

    Equal normalized names score 1.0 and an empty side scores 0.0. When one
    normalized name contains the other the score is len(shorter)/len(longer);
    otherwise it is the word-set overlap (intersection over union) of the
    original whitespace-separated words.
    """
    norm_a = normalize(a)
    norm_b = normalize(b)

    if norm_a == norm_b:
        return 1.0
    if not norm_a or not norm_b:
        return 0.0

    shorter, longer = sorted((norm_a, norm_b), key=len)
    if shorter in longer:
        return len(shorter) / len(longer)

    words_a = _words(a or "")
    words_b = _words(b or "")
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def strip_group_prefix(name: str, prefix: str = "ptr_") -> str:
    """Remove the partner-group naming prefix (case-insensitive) if present."""
    if prefix and name.lower().startswith(prefix.lower()):
        return name[len(prefix) :]
    return name


def name_variants(group_name: str, prefix: str = "ptr_") -> list[str]:
    """The group name as-is and with the naming prefix removed."""
    stripped = strip_group_prefix(group_name, prefix)
    if stripped == group_name:
        return [group_name]
    return [group_name, stripped]


def group_name_similarity(group_name: str, account_name: str, prefix: str = "ptr_") -> float:
    """Best similarity across the prefixed and unprefixed group name."""
    return max(similarity(variant, account_name) for variant in name_variants(group_name, prefix))


def rank_partner_matches(
    group_name: str,
    partners: Iterable[PartnerSummary],
    threshold: float = 0.4,
    limit: int = 5,
    prefix: str = "ptr_",
) -> MatchResult:
    """
    Find the exact partner match for a group name, or the closest candidates.

    An exact normalized match always wins and leaves close_matches empty.
    Otherwise candidates scoring at least ``threshold`` are returned, best
    first, ties broken by account name, capped at ``limit``.
    """
    partners = list(partners)
    variants = {normalize(v) for v in name_variants(group_name, prefix)} - {""}

    exact = sorted(
        (p for p in partners if normalize(p.account_name) in variants),
        key=lambda p: p.account_name.lower(),
    )
    if exact:
        return MatchResult(exact_match=exact[0], close_matches=[])

    scored = [
        PartnerMatch(
            partner=p, similarity=group_name_similarity(group_name, p.account_name, prefix)
        )
        for p in partners
    ]
    close = [m for m in scored if m.similarity >= threshold]
    close.sort(key=lambda m: (-m.similarity, m.partner.account_name.lower()))
    return MatchResult(exact_match=None, close_matches=close[:limit])
