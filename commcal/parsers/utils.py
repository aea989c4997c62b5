"""Shared utilities for parser modules.

Datetime normalisation, whitespace cleanup and address assembly used by
more than one parser.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

from commcal.config import settings

_WHITESPACE_RE = re.compile(r"\s+")


def local_zone() -> ZoneInfo:
    return ZoneInfo(settings.timezone)


def zone_or_none(name: str | None) -> ZoneInfo | None:
    """Return the named zone, or None when it is unknown."""
    if not name:
        return None
    try:
        return ZoneInfo(name.strip().strip('"'))
    except (ZoneInfoNotFoundError, ValueError):
        return None


def to_local_naive(dt: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(local_zone()).replace(tzinfo=None)


def parse_datetime(text: str | None) -> datetime | None:
    """Parse a free-form or ISO 8601 date/time string into naive local time."""
    if not text or not text.strip():
        return None
    try:
        return to_local_naive(date_parser.parse(text.strip()))
    except (ValueError, OverflowError):
        return None


def from_timestamp(seconds: float | int | str | None) -> datetime | None:
    """Convert a Unix timestamp (seconds) into naive local time.

    Values the platform cannot represent yield None.
    """
    if seconds in (None, ""):
        return None
    try:
        return to_local_naive(datetime.fromtimestamp(float(seconds), tz=timezone.utc))
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def clean_text(text: str | None) -> str | None:
    """Collapse runs of whitespace; return None for blank strings."""
    if text is None:
        return None
    text = _WHITESPACE_RE.sub(" ", str(text)).strip()
    return text or None


def join_address(*parts: str | None) -> str | None:
    """Join the non-blank address parts with commas."""
    cleaned = [p for p in (clean_text(part) for part in parts) if p]
    return ", ".join(cleaned) or None


def to_float(value) -> float | None:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def local_now() -> datetime:
    return datetime.now(local_zone()).replace(tzinfo=None)
