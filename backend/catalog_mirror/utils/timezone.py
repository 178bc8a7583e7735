"""
Timezone utilities for catalog-mirror.
Provides consistent UTC datetime handling for sync timestamps and tombstones.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now() -> datetime:
    """
    Get current UTC datetime with timezone info.
    Replacement for deprecated datetime.utcnow().
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is UTC and timezone-aware.
    If timezone-naive, assumes it's already UTC and adds UTC timezone.
    If timezone-aware, converts to UTC.
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Assume naive datetime is already UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_remote_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an RFC 3339 timestamp from the remote API into an aware UTC datetime.
    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    try:
        # Remote format: "2024-01-15T20:30:00Z" or "2024-01-15T20:30:00+01:00"
        return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def format_iso_utc(dt: Optional[datetime]) -> str:
    """
    Format datetime as ISO string in UTC.
    Returns empty string if datetime is None.
    """
    if dt is None:
        return ""
    return ensure_utc(dt).isoformat()


def days_ago(days: int) -> datetime:
    return utc_now() - timedelta(days=days)


def elapsed_ms(started: datetime) -> int:
    """Milliseconds elapsed since `started` (aware or naive UTC)."""
    return int((utc_now() - ensure_utc(started)).total_seconds() * 1000)
