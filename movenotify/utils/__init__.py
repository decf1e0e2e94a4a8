"""Shared utilities."""

from .timestamps import (
    days_ago,
    ensure_utc,
    format_timestamp,
    parse_iso_datetime,
    utc_now,
)

__all__ = [
    "utc_now",
    "ensure_utc",
    "days_ago",
    "parse_iso_datetime",
    "format_timestamp",
]
