"""
In-process fixed-window rate limiter keyed by caller identity.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float  # epoch seconds

    def headers(self) -> Dict[str, str]:
        return {'X-RateLimit-Remaining': str(self.remaining), 'X-RateLimit-Reset': str(math.ceil(self.reset_at))}


@dataclass
class _Window:
    count: int
    reset_at: float


class RateLimiter:
    """Allows max_requests per caller within each window.

    Stale windows are swept at most once per window length.
    """

    def __init__(self, max_requests: int, window_seconds: float, clock: Callable[[], float] = time.time):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for key in [key for key, window in self._windows.items() if now > window.reset_at]:
            del self._windows[key]

    def check(self, caller: str) -> RateLimitResult:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            window = self._windows.get(caller)
            if window is None or now > window.reset_at:
                window = _Window(count=1, reset_at=now + self.window_seconds)
                self._windows[caller] = window
                return RateLimitResult(True, self.max_requests - 1, window.reset_at)

            window.count += 1
            if window.count > self.max_requests:
                return RateLimitResult(False, 0, window.reset_at)
            return RateLimitResult(True, self.max_requests - window.count, window.reset_at)
