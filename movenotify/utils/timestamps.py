"""Timestamp utilities for UTC handling.

Every timestamp the service stores or compares is a timezone-aware UTC
datetime. Ages ("older than N days") are always measured against an
explicit ``now`` so that a job run evaluates all of its predicates
against the same instant.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware and in UTC.

    Naive datetimes are treated as UTC.

    Args:
        dt: Datetime to convert (can be None)

    Returns:
        Timezone-aware datetime in UTC, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt.astimezone(timezone.utc)


def days_ago(days: float, now: Optional[datetime] = None) -> datetime:
    """Return the instant ``days`` days before ``now``.

    Args:
        days: Age threshold in days
        now: Reference instant (defaults to the current UTC time)

    Returns:
        Timezone-aware UTC cutoff datetime

    Example:
        >>> from datetime import datetime, timezone
        >>> ref = datetime(2025, 3, 31, tzinfo=timezone.utc)
        >>> days_ago(30, ref).day
        1
    """
    reference = ensure_utc(now) if now is not None else utc_now()
    return reference - timedelta(days=days)


def parse_iso_datetime(iso_string: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 datetime string to a UTC datetime.

    Accepts a trailing ``Z`` and date-only values. Returns None for empty
    or unparseable input.
    """
    if not iso_string or not iso_string.strip():
        return None

    cleaned = iso_string.strip()
    if cleaned.endswith("Z"):
        cleaned = cleaned[:-1] + "+00:00"

    try:
        return ensure_utc(datetime.fromisoformat(cleaned))
    except ValueError:
        try:
            return ensure_utc(datetime.strptime(cleaned, "%Y-%m-%d"))
        except ValueError:
            return None


def format_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Format a datetime as ISO 8601 UTC with a ``Z`` suffix (no microseconds)."""
    dt_utc = ensure_utc(dt)
    if dt_utc is None:
        return None
    return dt_utc.strftime("%Y-%m-%dT%H:%M:%SZ")
