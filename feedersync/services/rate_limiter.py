"""In-memory per-device poll rate limiter.

Counts polls per device in calendar-minute buckets.  Counters live in process
memory: with several API instances each enforces its own ceiling.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, NamedTuple


class _Window(NamedTuple):
    minute: int
    count: int


class PollRateLimiter:
    """Per-key calendar-minute counter with a fixed ceiling."""

    # prune stale windows once the table grows past this many keys
    PRUNE_THRESHOLD = 10_000

    def __init__(
        self, max_per_minute: int, clock: Callable[[], float] = time.time
    ) -> None:
        self._max_per_minute = max_per_minute
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    @property
    def max_per_minute(self) -> int:
        return self._max_per_minute

    def allow(self, key: str) -> bool:
        """Count one poll for ``key`` and report whether it is within the limit."""
        minute = int(self._clock()) // 60
        with self._lock:
            current = self._windows.get(key)
            if current is None or current.minute != minute:
                updated = _Window(minute, 1)
            else:
                updated = _Window(minute, current.count + 1)
            self._windows[key] = updated
            if len(self._windows) > self.PRUNE_THRESHOLD:
                self._prune(minute)
        return updated.count <= self._max_per_minute

    def _prune(self, minute: int) -> None:
        stale = [k for k, w in self._windows.items() if w.minute != minute]
        for k in stale:
            del self._windows[k]
