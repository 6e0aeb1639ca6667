"""Configuration via environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from receipt_reconciler.models import PlanLimits, PlanTier

load_dotenv()

DEFAULT_BATCH_SIZE = 400
MAX_BATCH_SIZE = 500

_UNBOUNDED = {"", "none", "unlimited"}


@dataclass(frozen=True)
class QuotaConfig:
    """Per-tier ceilings and the timezone that defines a quota day."""

    limits: dict[PlanTier, PlanLimits]
    timezone: ZoneInfo


def get_database_url() -> str:
    """Return the DATABASE_URL from the environment."""
    url = os.environ.get("DATABASE_URL")
    if not url:
        msg = "DATABASE_URL environment variable is required"
        raise ValueError(msg)
    return url


def get_batch_size() -> int:
    """Return SCAN_BATCH_SIZE, the number of writes committed per batch.

    Defaults to 400 and must stay within 1..500 so a single batch fits the
    store's write-batch limits.
    """
    raw = os.environ.get("SCAN_BATCH_SIZE", str(DEFAULT_BATCH_SIZE))
    try:
        size = int(raw)
    except ValueError:
        msg = f"SCAN_BATCH_SIZE must be an integer, got {raw!r}"
        raise ValueError(msg) from None
    if not 1 <= size <= MAX_BATCH_SIZE:
        msg = f"SCAN_BATCH_SIZE must be between 1 and {MAX_BATCH_SIZE}, got {size}"
        raise ValueError(msg)
    return size


def get_quota_timezone() -> ZoneInfo:
    """Return the QUOTA_TIMEZONE used for day and month boundaries.

    Defaults to UTC.
    """
    name = os.environ.get("QUOTA_TIMEZONE", "UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        msg = f"QUOTA_TIMEZONE is not a known timezone: {name!r}"
        raise ValueError(msg) from None


def get_plan_limits() -> dict[PlanTier, PlanLimits]:
    """Build the per-tier ceilings from environment variables.

    Optional: QUOTA_FREE_DAILY (20), QUOTA_FREE_MONTHLY (300),
    QUOTA_PRO_DAILY (200), QUOTA_PRO_MONTHLY (unlimited).
    """
    return {
        PlanTier.FREE: PlanLimits(
            daily=_read_limit("QUOTA_FREE_DAILY", "20"),
            monthly=_read_limit("QUOTA_FREE_MONTHLY", "300"),
        ),
        PlanTier.PRO: PlanLimits(
            daily=_read_limit("QUOTA_PRO_DAILY", "200"),
            monthly=_read_limit("QUOTA_PRO_MONTHLY", "unlimited"),
        ),
    }


def get_quota_config() -> QuotaConfig:
    """Return the combined quota configuration."""
    return QuotaConfig(limits=get_plan_limits(), timezone=get_quota_timezone())


def get_anthropic_api_key() -> str:
    """Return the ANTHROPIC_API_KEY from the environment."""
    key = os.environ.get("ANTHROPIC_API_KEY")
    if not key:
        msg = "ANTHROPIC_API_KEY environment variable is required"
        raise ValueError(msg)
    return key


def get_llm_model() -> str:
    """Return the LLM model identifier.

    Defaults to claude-haiku-4-5-20251001.
    """
    return os.environ.get("LLM_MODEL", "claude-haiku-4-5-20251001")


def _read_limit(name: str, default: str) -> int | None:
    """Parse a ceiling; empty, 'none' or 'unlimited' mean unbounded."""
    raw = os.environ.get(name, default).strip()
    if raw.lower() in _UNBOUNDED:
        return None
    try:
        value = int(raw)
    except ValueError:
        msg = f"{name} must be a non-negative integer or 'unlimited', got {raw!r}"
        raise ValueError(msg) from None
    if value < 0:
        msg = f"{name} must be a non-negative integer or 'unlimited', got {raw!r}"
        raise ValueError(msg)
    return value
