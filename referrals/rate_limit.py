import threading
import time
from collections import deque
from typing import Callable, Protocol


class RateLimiter(Protocol):
    def hit(self, key: str) -> bool:
        """Record a request for ``key``; False when the caller is over its limit."""
        ...


class InMemoryRateLimiter:
    """Sliding-window limiter for a single process.

    Multi-instance deployments need a limiter backed by a shared cache that
    implements the same ``hit`` method.
    """

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._lock = threading.Lock()
        self._buckets: dict[str, deque] = {}
        self._last_sweep = clock()

    def hit(self, key: str) -> bool:
        now = self.clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            bucket = self._buckets.setdefault(key, deque())
            while bucket and now - bucket[0] >= self.window_seconds:
                bucket.popleft()
            if len(bucket) >= self.max_requests:
                return False
            bucket.append(now)
            return True

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._buckets)

    def _sweep(self, now: float) -> None:
        # Callers are client-supplied, so idle buckets are dropped once per window.
        stale = [
            key for key, bucket in self._buckets.items()
            if not bucket or now - bucket[-1] >= self.window_seconds
        ]
        for key in stale:
            del self._buckets[key]
        self._last_sweep = now
