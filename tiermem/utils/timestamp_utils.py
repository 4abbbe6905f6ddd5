"""
Timestamp utilities for consistent, timezone-aware time handling across the tiers.
"""

import time
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(timestamp: Optional[float] = None) -> datetime:
    """Convert timestamp to an aware UTC datetime object.

    Args:
        timestamp: Unix timestamp in seconds (optional, uses current time if None)

    Returns:
        datetime object
    """
    if timestamp is None:
        timestamp = time.time()
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(value) -> Optional[datetime]:
    """Parse an ISO string or epoch seconds coming back from storage."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)):
        return to_datetime(value)
    return ensure_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))


def seconds_since(moment: datetime, now: Optional[datetime] = None) -> float:
    """Elapsed seconds between moment and now, clamped at zero.

    Args:
        moment: Earlier point in time
        now: Reference time (uses current UTC time if None)

    Returns:
        Non-negative number of seconds
    """
    now = ensure_utc(now) if now is not None else utc_now()
    return max((now - ensure_utc(moment)).total_seconds(), 0.0)
