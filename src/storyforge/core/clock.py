"""Time source for leases, deadlines and timestamps.

All pipeline components take a Clock so that lease expiry and wall-clock
budgets can be exercised in tests without sleeping.
"""

from datetime import datetime, timezone
from typing import Protocol


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock backed by the system time."""

    def now(self) -> datetime:
        return utcnow()
