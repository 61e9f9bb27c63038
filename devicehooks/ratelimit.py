"""In-memory token buckets keyed by client address."""

from __future__ import annotations

import threading
import time


class Bucket:
    __slots__ = ("tokens", "updated")

    def __init__(self, capacity: int) -> None:
        self.tokens = float(capacity)
        self.updated = time.monotonic()


class RateLimiter:
    def __init__(self) -> None:
        self._buckets: dict[str, Bucket] = {}
        self._lock = threading.Lock()

    def reset(self) -> None:
        with self._lock:
            self._buckets.clear()

    def allow(self, key: str, rps: float, burst: int) -> bool:
        """Take one token from ``key``'s bucket, refilled at ``rps`` up to ``burst``."""

        now = time.monotonic()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = Bucket(burst)
            elapsed = now - bucket.updated
            bucket.tokens = min(float(burst), bucket.tokens + elapsed * max(rps, 0.0))
            bucket.updated = now
            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return True
            return False


limiter = RateLimiter()
