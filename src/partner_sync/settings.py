"""
Single source of truth for all PPS_* environment variables.

Every module (sync engine, reconciliation, CLI) imports from here.
No module reads os.getenv directly.

All variables use the PPS_ prefix. The same variable names are used in
every environment; the *values* differ (set in .env for local dev).

Usage::

    from partner_sync.settings import get_settings
    s = get_settings()
    print(s.database_url, s.lms_api_url)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TIER_REQUIREMENTS: dict[str, int] = {
    "Registered": 5,
    "Certified": 10,
    "Select": 15,
    "Premier": 20,
    "Premier Plus": 20,
    "Aggregator": 5,
}


class Settings(BaseSettings):
    """All partner sync settings, loaded from PPS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PPS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Environment ───────────────────────────────────────────────────────────
    env: Literal["local", "dev", "staging", "prod"] = "local"

    # ── Database ──────────────────────────────────────────────────────────────
    database_url: str = "sqlite+aiosqlite:///./partner_portal.db"
    sql_echo: bool = False

    # ── Observability ─────────────────────────────────────────────────────────
    log_level: str = "INFO"

    # ── LMS API ───────────────────────────────────────────────────────────────
    lms_api_url: str = "https://api.northpass.com"
    lms_api_key: str = ""

    # Per-call timeout. Exploratory calls upstream complete well inside 10s.
    lms_timeout_seconds: float = 10.0
    lms_page_size: int = 100
    lms_page_delay_seconds: float = 0.125
    lms_max_pages: int = 200
    lms_max_retries: int = 1

    # ── Sync engine ───────────────────────────────────────────────────────────
    sync_batch_size: int = 5
    sync_batch_delay_seconds: float = 0.1
    membership_add_delay_seconds: float = 0.2
    stale_lock_minutes: int = 30
    pending_max_sync_cycles: int = 3
    enrollment_max_age_days: int = 7

    # ── Matching ──────────────────────────────────────────────────────────────
    match_threshold: float = 0.4
    match_limit: int = 5
    auto_match_min_score: float = 0.85
    group_prefix: str = "ptr_"
    all_partners_group_name: str = "All Partners"

    # ── Certification ─────────────────────────────────────────────────────────
    cert_validity_months: int = 24
    cert_category_validity_months: dict[str, int] = Field(
        default_factory=lambda: {"go_to_market": 12}
    )
    default_tier_requirements: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_TIER_REQUIREMENTS)
    )

    # ── Startup validation ────────────────────────────────────────────────────

    @model_validator(mode="after")
    def _validate_config(self) -> Settings:
        """
        Fail fast on misconfiguration. All errors collected before raising so
        a single startup failure lists every problem at once.
        """
        errors: list[str] = []

        if not 0.0 <= self.match_threshold <= 1.0:
            errors.append("PPS_MATCH_THRESHOLD must be between 0 and 1")

        if not 0.0 <= self.auto_match_min_score <= 1.0:
            errors.append("PPS_AUTO_MATCH_MIN_SCORE must be between 0 and 1")

        if self.sync_batch_size < 1:
            errors.append("PPS_SYNC_BATCH_SIZE must be at least 1")

        if self.lms_page_size < 1:
            errors.append("PPS_LMS_PAGE_SIZE must be at least 1")

        if self.lms_max_retries < 0:
            errors.append("PPS_LMS_MAX_RETRIES must not be negative")

        # ── Any deployed environment (dev / staging / prod, not local) ───────
        if self.env != "local":
            if "localhost" in self.database_url or "127.0.0.1" in self.database_url:
                errors.append(
                    f"PPS_DATABASE_URL must not point to localhost (env={self.env!r})"
                )

            if self.database_url.startswith("sqlite"):
                errors.append(f"PPS_DATABASE_URL must not use SQLite (env={self.env!r})")

            if not self.lms_api_key:
                errors.append(f"PPS_LMS_API_KEY is required in env={self.env!r}")

        if errors:
            raise ValueError(
                f"[PPS env={self.env!r}] Configuration errors, fix before deploying:\n  - "
                + "\n  - ".join(errors)
            )

        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the cached application settings singleton."""
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (used in tests)."""
    get_settings.cache_clear()
