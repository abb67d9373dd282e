"""
Clock & Deadline Calculator — pure time arithmetic for lifecycle decisions.

All timestamps are naive UTC, matching what the database stores.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    """Source of "now". Injected into every lifecycle operation."""

    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


def response_deadline(now: datetime, window_seconds: int) -> datetime:
    """Deadline by which the doctor must reply to the patient's first message."""
    return now + timedelta(seconds=window_seconds)


def seconds_between(start: Optional[datetime], end: datetime) -> int:
    """Whole seconds from start to end, floored and never negative."""
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds()))


def seconds_remaining(deadline: Optional[datetime], now: datetime) -> Optional[int]:
    """Seconds left until deadline, 0 once passed, None when no deadline is set."""
    if deadline is None:
        return None
    return max(0, int((deadline - now).total_seconds()))


def has_elapsed(since: Optional[datetime], now: datetime, seconds: int) -> bool:
    """True once at least `seconds` have passed since `since`."""
    if since is None:
        return False
    return now >= since + timedelta(seconds=seconds)


_system_clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency; tests override it with a frozen clock."""
    return _system_clock
