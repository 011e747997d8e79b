"""
Per-client request throttling for the onboarding and authentication endpoints.

Each client key keeps the timestamps of its accepted requests inside the
current window. A sensor that hammers /connectionRequest or tries to guess
proofs on /authenticate runs out of budget without affecting anyone else.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional

from .errors import RateLimited
from .logging_config import audit_log


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """Sliding window limiter; safe to share between request threads."""

    def __init__(self, rpm: int, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        self._max_hits = max(1, rpm)
        self._window = window_seconds
        self._clock = clock
        self._windows: Dict[str, Deque[float]] = defaultdict(deque)
        self._mutex = threading.RLock()

    def _expire(self, hits: Deque[float], now: float) -> int:
        cutoff = now - self._window
        dropped = 0
        while hits and hits[0] < cutoff:
            hits.popleft()
            dropped += 1
        return dropped

    def check(self, key: str) -> RateLimitResult:
        """Count one request for ``key`` unless its window is already full."""
        now = self._clock()
        with self._mutex:
            hits = self._windows[key]
            self._expire(hits, now)
            oldest = hits[0] if hits else now
            reset_at = oldest + self._window
            if len(hits) >= self._max_hits:
                return RateLimitResult(False, 0, reset_at, retry_after=max(0.0, reset_at - now))
            hits.append(now)
            return RateLimitResult(True, self._max_hits - len(hits), reset_at)

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def enforce(self, key: str, endpoint: str) -> RateLimitResult:
        """
        Like :meth:`check` but raises when the window is exhausted.

        Raises:
            RateLimited: If the key has no requests left in the window
        """
        result = self.check(key)
        if not result.allowed:
            audit_log.rate_limit_exceeded(key, endpoint)
            raise RateLimited(retry_after=result.retry_after)
        return result

    def reset(self, key: Optional[str] = None) -> None:
        with self._mutex:
            if key is None:
                self._windows.clear()
            else:
                self._windows.pop(key, None)

    def cleanup_expired(self) -> int:
        """Forget timestamps that left the window. Returns how many were dropped."""
        now = self._clock()
        dropped = 0
        with self._mutex:
            for key in list(self._windows):
                hits = self._windows[key]
                dropped += self._expire(hits, now)
                if not hits:
                    del self._windows[key]
        return dropped
