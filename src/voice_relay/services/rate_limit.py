"""Per-client sliding-window request limiting for the HTTP routes."""

from __future__ import annotations

import time
from collections import deque
from typing import Callable


class SlidingWindowRateLimiter:
    """Allow at most ``max_requests`` per ``window_seconds`` for each key.

    Keys with no request left inside the window are forgotten, so the table
    only holds clients seen during the last window.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: dict[str, deque[float]] = {}
        self._last_sweep = clock()

    def check(self, key: str) -> bool:
        """Record a request for ``key`` and return whether it is allowed."""

        now = self._clock()
        if now - self._last_sweep >= self.window_seconds:
            self._sweep(now)

        timestamps = self._requests.setdefault(key, deque())
        self._prune(timestamps, now)

        if len(timestamps) >= self.max_requests:
            return False

        timestamps.append(now)
        return True

    def reset(self) -> None:
        self._requests.clear()
        self._last_sweep = self._clock()

    def _prune(self, timestamps: deque[float], now: float) -> None:
        while timestamps and now - timestamps[0] >= self.window_seconds:
            timestamps.popleft()

    def _sweep(self, now: float) -> None:
        for key in list(self._requests):
            timestamps = self._requests[key]
            self._prune(timestamps, now)
            if not timestamps:
                del self._requests[key]
        self._last_sweep = now


__all__ = ["SlidingWindowRateLimiter"]
