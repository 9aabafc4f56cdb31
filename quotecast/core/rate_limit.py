"""In-memory fixed-window rate limiter keyed by client identifier (IP address).

Two instances are built per app: one for ``POST /api/chat`` and a more lenient
one for ``GET /api/chat/recover``.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable

from quotecast.core.config import RateLimitConfig


@dataclass(frozen=True)
class RateLimitResult:
    success: bool
    limit: int
    remaining: int
    # wall-clock epoch seconds at which the window resets
    reset_at: float

    def retry_after(self, now: float) -> int:
        """Whole seconds until the window resets (at least 1)."""
        return max(1, int(-(-(self.reset_at - now) // 1)))


class _Window:
    __slots__ = ("count", "reset_at")

    def __init__(self, reset_at: float):
        self.count = 0
        self.reset_at = reset_at


class RateLimiter:
    """Fixed-window limiter: at most ``max_requests`` per ``window_seconds``."""

    def __init__(self, config: RateLimitConfig, clock: Callable[[], float] = time.time):
        self.limit = config.max_requests
        self.window = config.window_seconds
        self._clock = clock
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def now(self) -> float:
        return self._clock()

    def check(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                window = _Window(now + self.window)
                self._windows[key] = window

            if window.count >= self.limit:
                return RateLimitResult(False, self.limit, 0, window.reset_at)

            window.count += 1
            return RateLimitResult(
                True, self.limit, self.limit - window.count, window.reset_at
            )

    def cleanup(self) -> int:
        """Drop expired windows. Returns count removed."""
        now = self._clock()
        with self._lock:
            stale = [k for k, w in self._windows.items() if now >= w.reset_at]
            for k in stale:
                del self._windows[k]
        return len(stale)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()
