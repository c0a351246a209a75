"""In-memory fixed-window rate limiting for client actions."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allows `limit` actions per key within each `window_seconds` window."""

    def __init__(
        self,
        limit: int = 10,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    def check(self, key: str) -> tuple[bool, int]:
        """
        Record an attempt.

        Returns:
            Tuple of (allowed, retry_after_seconds); retry_after is 0 when allowed.
        """
        if self.limit <= 0:
            return False, math.ceil(self.window_seconds)
        now = self._clock()
        for k in [k for k, w in self._windows.items() if w.reset_at <= now]:
            del self._windows[k]

        window = self._windows.get(key)
        if window is None:
            self._windows[key] = _Window(count=1, reset_at=now + self.window_seconds)
            return True, 0
        if window.count < self.limit:
            window.count += 1
            return True, 0
        return False, max(1, math.ceil(window.reset_at - now))

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._windows.clear()
        else:
            self._windows.pop(key, None)
