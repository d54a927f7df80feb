"""
Rate limiting module for the record key custody service.

Sliding window limiter keyed by endpoint or by requester, so one
account hammering get-key cannot starve the others.
"""

import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque, Dict, Optional


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float
    retry_after: Optional[float] = None


class RateLimiter:
    """
    At most ``rpm`` hits per key in any ``window_seconds`` span.

    Each key keeps the timestamps of its hits still inside the window;
    refused hits are not recorded. Keys whose hits have all expired are
    dropped by a sweep that runs at most once per window.
    """

    def __init__(self, rpm: int, window_seconds: int = 60):
        self._max_hits = max(1, rpm)
        self._span = window_seconds
        self._buckets: Dict[str, Deque[float]] = defaultdict(deque)
        self._mutex = threading.Lock()
        self._last_sweep = time.time()

    def allow(self, key: str) -> bool:
        return self.check(key).allowed

    def check(self, key: str) -> RateLimitResult:
        """Record a hit for ``key`` unless that would exceed the limit."""
        t = time.time()
        with self._mutex:
            # keys are caller-chosen; idle ones are forgotten once per window
            if t - self._last_sweep >= self._span:
                self._sweep(t)
            hits = self._buckets[key]
            self._drop_stale(hits, t)
            oldest = hits[0] if hits else t
            if len(hits) >= self._max_hits:
                return RateLimitResult(False, 0, oldest + self._span, max(0.0, oldest + self._span - t))
            hits.append(t)
            return RateLimitResult(True, self._max_hits - len(hits), oldest + self._span)

    def _drop_stale(self, hits: Deque[float], t: float) -> None:
        cutoff = t - self._span
        while hits and hits[0] < cutoff:
            hits.popleft()

    def _sweep(self, t: float) -> int:
        for hits in self._buckets.values():
            self._drop_stale(hits, t)
        idle = [k for k, hits in self._buckets.items() if not hits]
        for k in idle:
            del self._buckets[k]
        self._last_sweep = t
        return len(idle)

    def tracked_keys(self) -> int:
        with self._mutex:
            return len(self._buckets)

    def reset(self, key: Optional[str] = None) -> None:
        """Forget one key's hits, or every key's when ``key`` is None."""
        with self._mutex:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    def cleanup_expired(self) -> int:
        """Drop stale hits; return how many keys were left empty and forgotten."""
        t = time.time()
        with self._mutex:
            return self._sweep(t)
