"""
UTC timezone utilities
Ensures all datetime operations use UTC to avoid timezone bugs
"""
from datetime import datetime, timezone
from typing import Optional, Union


# Basic tier never expires; stored as a far-future period end
FAR_FUTURE = datetime(2099, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


def utcnow() -> datetime:
    """Get current UTC datetime (replaces datetime.now())"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[Union[str, datetime]]) -> Optional[datetime]:
    """
    Ensure datetime is UTC aware.

    - If None, returns None
    - If string, parses as ISO format (handles 'Z' suffix)
    - If naive datetime, assumes it's UTC and adds timezone
    - If aware datetime, converts to UTC
    """
    if dt is None:
        return None

    if isinstance(dt, str):
        dt = datetime.fromisoformat(dt.replace("Z", "+00:00"))

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def from_unix(ts: Optional[Union[int, float, str]]) -> Optional[datetime]:
    """Convert a provider Unix timestamp (seconds) into a UTC-aware datetime"""
    if ts is None or ts == "":
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)
