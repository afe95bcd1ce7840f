"""
timeutil.py - Timestamp helpers.

All persisted timestamps are integer Unix microseconds in UTC. The
scheduler works with datetimes; these helpers convert at the boundary.
"""

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], int]

MICROS_PER_SECOND = 1_000_000
MICROS_PER_MINUTE = 60 * MICROS_PER_SECOND


def now_micros() -> int:
    """Current time as Unix microseconds."""
    return time.time_ns() // 1000


def to_micros(dt: datetime) -> int:
    """Convert a datetime to Unix microseconds. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    delta = dt - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (delta.days * 86_400 + delta.seconds) * MICROS_PER_SECOND + delta.microseconds


def from_micros(value: int, tz=timezone.utc) -> datetime:
    """Convert Unix microseconds to an aware datetime in `tz`."""
    seconds, micros = divmod(value, MICROS_PER_SECOND)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=micros).astimezone(tz)


def truncate_to_minute(value: int) -> int:
    return value - (value % MICROS_PER_MINUTE)


def format_micros(value: int | None) -> str:
    """Human readable UTC rendering, used by the CLI."""
    if value is None:
        return "-"
    return from_micros(value).strftime("%Y-%m-%d %H:%M:%S UTC")
