"""Date/time rendering in a tenant's timezone for spoken responses."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"


def get_zone(tz_name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s, using %s", tz_name, DEFAULT_TIMEZONE)
        return ZoneInfo(DEFAULT_TIMEZONE)


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an RFC 3339 timestamp (``Z`` suffix allowed) into an aware datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def to_rfc3339(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_long_date(value: datetime) -> str:
    """``Friday, March 6, 2026``"""
    return f"{value:%A}, {value:%B} {value.day}, {value.year}"


def format_clock(value: datetime) -> str:
    """``2:30 PM``"""
    hour = value.hour % 12 or 12
    return f"{hour}:{value:%M} {value:%p}"


def format_current_datetime(tz_name: str | None, now: datetime | None = None) -> str:
    """``Friday, March 6, 2026 at 2:30 PM EST`` in the tenant's timezone."""
    local = (now or datetime.now(timezone.utc)).astimezone(get_zone(tz_name))
    return f"{format_long_date(local)} at {format_clock(local)} {local.tzname()}"


def relative_timeframe(start: datetime, tz_name: str | None, now: datetime | None = None) -> str:
    """Human phrase for how far away a booking day is ("tomorrow", "in 3 weeks")."""
    zone = get_zone(tz_name)
    today = (now or datetime.now(timezone.utc)).astimezone(zone).date()
    diff = (start.astimezone(zone).date() - today).days

    if diff == 0:
        return "today"
    if diff == 1:
        return "tomorrow"
    if diff == -1:
        return "yesterday"
    if 1 < diff <= 6:
        return f"in {diff} days"
    if 7 <= diff <= 13:
        return "next week"
    if 14 <= diff <= 30:
        return f"in {diff // 7} weeks"
    if 30 < diff <= 60:
        return "next month"
    if diff > 60:
        return f"in {diff // 30} months"
    if -6 <= diff < -1:
        return f"{abs(diff)} days ago"
    weeks = abs(diff) // 7
    return f"{weeks} {'week' if weeks == 1 else 'weeks'} ago"
