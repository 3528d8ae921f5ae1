"""
Timezone-aware datetime utilities for FlowStack.

All functions return timezone-aware datetime objects in UTC unless stated
otherwise. SQLite hands datetimes back naive, so anything read from the
database goes through ensure_utc() before arithmetic.
"""

from datetime import datetime, timezone, timedelta
from typing import Optional
import pytz


def utc_now() -> datetime:
    """
    Get the current UTC time as a timezone-aware datetime object.

    Returns:
        datetime: Current UTC time with timezone information
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime object is timezone-aware and in UTC.

    If the datetime is naive (no timezone), it assumes UTC.
    If the datetime has a different timezone, it converts to UTC.

    Args:
        dt: Datetime object (may be naive or timezone-aware)

    Returns:
        datetime: Timezone-aware datetime in UTC, or None if dt is None
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    if dt.tzinfo != timezone.utc:
        return dt.astimezone(timezone.utc)
    return dt


def utc_days_ago(days: int) -> datetime:
    """
    Get a UTC datetime for a specific number of days ago.

    Example:
        >>> week_ago = utc_days_ago(7)
    """
    return utc_now() - timedelta(days=days)


def hours_until(dt: datetime) -> int:
    """Whole hours remaining until dt, never negative."""
    remaining = ensure_utc(dt) - utc_now()
    return max(0, int(remaining.total_seconds() // 3600))


def utc_to_local(dt: datetime, local_tz: str = 'Africa/Nairobi') -> datetime:
    """
    Convert a UTC datetime to a tenant's local timezone.

    Args:
        dt: UTC datetime (naive values are treated as UTC)
        local_tz: Target timezone name (default: Africa/Nairobi)

    Returns:
        datetime: Datetime in the specified local timezone
    """
    return ensure_utc(dt).astimezone(pytz.timezone(local_tz))


def format_utc_iso(dt: Optional[datetime] = None) -> Optional[str]:
    """Format a datetime as an ISO 8601 string in UTC (None passes through)."""
    if dt is None:
        return None
    return ensure_utc(dt).isoformat()
