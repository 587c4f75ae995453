"""
Time helpers.

All persisted timestamps are naive UTC; provider APIs take seconds since
the epoch.
"""

import calendar
import math
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_seconds(dt: datetime) -> int:
    """Naive-UTC (or aware) datetime to whole epoch seconds, floored."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return calendar.timegm(dt.utctimetuple())


def from_epoch_seconds(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)


def parse_iso8601(value: str) -> datetime:
    """Parse an ISO 8601 string (with Z or offset) to naive UTC."""
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def ceil_to_second(dt: datetime) -> datetime:
    """Round up to the next whole second (no-op when already whole)."""
    if dt.microsecond == 0:
        return dt
    return from_epoch_seconds(math.ceil(dt.replace(tzinfo=timezone.utc).timestamp()))
