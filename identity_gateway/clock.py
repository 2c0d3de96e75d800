"""Time sources for the identity gateway.

All expiry decisions (challenges, admission passes, temp keys) compare
against a `TimeSource` owned by the service instead of reading the wall
clock directly. Time is expressed as float seconds since the Unix epoch.
"""

from __future__ import annotations

import threading
import time


class TimeSource:
    """Source of the current time for expiry decisions."""

    def now(self) -> float:
        """Current time in seconds since the epoch."""
        raise NotImplementedError


class LocalTimeSource(TimeSource):
    """Local system time."""

    def now(self) -> float:
        return time.time()


class ManualTimeSource(TimeSource):
    """Logical clock advanced explicitly by the caller.

    Time never moves backwards: `advance` rejects negative steps and
    `set` rejects values earlier than the current reading.
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self._lock = threading.Lock()
        self._now = float(start)

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("clock cannot move backwards")
        with self._lock:
            self._now += float(seconds)
            return self._now

    def set(self, value: float) -> None:
        with self._lock:
            if float(value) < self._now:
                raise ValueError("clock cannot move backwards")
            self._now = float(value)
