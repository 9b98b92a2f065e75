"""Rolling dedup memory shared by every alert source."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable


class SuppressionTable:
    """Maps dedup_key -> monotonic time of the last delivered alert.

    Guarded by a lock so it can be consulted from any thread; entries older
    than the window are pruned lazily on access.
    """

    def __init__(
        self,
        window_secs: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._window_secs = window_secs
        self._clock = clock
        self._last_delivered: dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def window_secs(self) -> float:
        return self._window_secs

    def is_suppressed(self, key: str) -> bool:
        """True if ``key`` was delivered less than ``window_secs`` ago."""
        now = self._clock()
        with self._lock:
            self._prune(now)
            last = self._last_delivered.get(key)
            return last is not None and now - last < self._window_secs

    def record(self, key: str) -> None:
        """Mark ``key`` as delivered now."""
        with self._lock:
            self._last_delivered[key] = self._clock()

    def __len__(self) -> int:
        with self._lock:
            self._prune(self._clock())
            return len(self._last_delivered)

    def _prune(self, now: float) -> None:
        expired = [
            k for k, t in self._last_delivered.items() if now - t >= self._window_secs
        ]
        for k in expired:
            del self._last_delivered[k]
