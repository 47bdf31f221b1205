"""
Time helpers.

All timestamps are stored as naive UTC datetimes (SQLite drops tzinfo), so
everything entering the engine is normalised through ``to_naive_utc``.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as a naive UTC datetime"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def days_between(start: datetime, end: datetime) -> float:
    """Fractional days from ``start`` to ``end``"""
    return (end - start) / timedelta(days=1)
