from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta

_DURATION_RE = re.compile(
    r"^\s*(\d+)\s*(second|seconds|sec|minute|minutes|min|hour|hours|day|days)\s*$",
    re.IGNORECASE,
)
_UNIT_SECONDS = {
    "second": 1,
    "seconds": 1,
    "sec": 1,
    "minute": 60,
    "minutes": 60,
    "min": 60,
    "hour": 3600,
    "hours": 3600,
    "day": 86400,
    "days": 86400,
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None or dt.tzinfo.utcoffset(dt) is None:
        raise ValueError("timestamp must be a timezone-aware datetime")
    return dt.astimezone(UTC)


def to_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt
    return ensure_utc(dt).replace(tzinfo=None)


def naive_utc_now() -> datetime:
    return to_naive_utc(utc_now())


def parse_duration(value: str | int | float | timedelta) -> timedelta:
    """Parse ``"1 minute"``, ``"15 MINUTES"``, ``"2 hours"`` or plain seconds."""
    if isinstance(value, timedelta):
        return value
    if isinstance(value, (int, float)):
        return timedelta(seconds=float(value))
    m = _DURATION_RE.match(str(value))
    if not m:
        raise ValueError(f"Unrecognised duration: {value!r}")
    amount = int(m.group(1))
    if amount <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return timedelta(seconds=amount * _UNIT_SECONDS[m.group(2).lower()])


def format_duration(delta: timedelta) -> str:
    seconds = int(delta.total_seconds())
    for unit, size in (("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds >= size and seconds % size == 0:
            n = seconds // size
            return f"{n} {unit}" + ("s" if n != 1 else "")
    return f"{seconds} second" + ("s" if seconds != 1 else "")
