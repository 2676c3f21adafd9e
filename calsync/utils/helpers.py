"""Time and formatting helpers shared across calsync."""

from datetime import datetime, timezone
from typing import Optional

DB_TIMESPEC = "microseconds"


def utc_now() -> datetime:
    """Get the current time as a timezone-aware UTC datetime.

    This is the default clock for the orchestrator, scheduler and service;
    tests inject their own callable instead.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Return ``dt`` converted to UTC, treating naive values as UTC.

    Args:
        dt: Datetime to normalize

    Returns:
        Timezone-aware datetime in UTC
    """
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db_timestamp(dt: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for SQLite storage.

    Values are always UTC with microsecond precision, so the ISO strings are
    fixed width and sort lexically in chronological order.
    """
    if dt is None:
        return None
    return ensure_utc(dt).isoformat(timespec=DB_TIMESPEC)


def from_db_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamp written by :func:`to_db_timestamp`."""
    if not value:
        return None
    return ensure_utc(datetime.fromisoformat(value))


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate string to maximum length with suffix.

    Args:
        text: Text to truncate
        max_length: Maximum length including suffix
        suffix: Suffix to add when truncating

    Returns:
        Truncated string
    """
    if len(text) <= max_length:
        return text

    return text[: max_length - len(suffix)] + suffix


def format_duration(seconds: float) -> str:
    """Format a duration in seconds as a short human readable string."""
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m {seconds % 60}s"
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    return f"{hours}h {minutes}m"
