"""Injectable wall clock.

Debounce windows, retry backoff and metric windows all read time through a
Clock so tests can move time forward explicitly instead of sleeping.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    """Source of the current time in epoch milliseconds."""

    def now_ms(self) -> int: ...

    def now(self) -> datetime: ...


class SystemClock:
    """Clock backed by the real system time."""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to.

    Example:
        clock = ManualClock(start_ms=1_000)
        clock.advance(5_000)
        assert clock.now_ms() == 6_000
    """

    def __init__(self, start_ms: int = 0) -> None:
        self._now_ms = start_ms

    def now_ms(self) -> int:
        return self._now_ms

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._now_ms / 1000, tz=timezone.utc)

    def advance(self, ms: int) -> None:
        """Move the clock forward by ``ms`` milliseconds."""
        self._now_ms += ms

    def set(self, ms: int) -> None:
        """Jump to an absolute time in epoch milliseconds."""
        self._now_ms = ms


def ms_to_datetime(ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
