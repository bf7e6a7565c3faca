"""In-process sliding-window rate limiting keyed by client identity."""

import logging
import math
import time
from collections import deque
from threading import Lock
from typing import Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger("elearn.rate_limit")


class SlidingWindowRateLimiter:
    """Thread-safe limiter allowing ``max_requests`` per ``window_seconds``.

    Keys whose window has emptied are dropped, so memory tracks the clients
    seen in the last window rather than every client ever seen.
    """

    def __init__(
        self,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self._clock = clock or time.monotonic
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = Lock()
        self._next_sweep = self._clock() + self.window_seconds

    def _sweep(self, now: float) -> None:
        # Caller holds the lock.
        cutoff = now - self.window_seconds
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]
        if stale:
            logger.debug("Evicted %d idle rate limit keys", len(stale))
        self._next_sweep = now + self.window_seconds

    def hit(self, key: str) -> Tuple[bool, int]:
        """Record one request for ``key``.

        Returns ``(allowed, retry_after_seconds)``. Rejected requests are not
        counted against the window.
        """
        now = self._clock()
        cutoff = now - self.window_seconds
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= cutoff:
                hits.popleft()
            if len(hits) >= self.max_requests:
                retry_after = max(1, math.ceil(hits[0] + self.window_seconds - now))
                logger.info("Rate limit exceeded for %s; retry in %ss", key, retry_after)
                return False, retry_after
            hits.append(now)
            return True, 0

    def remaining(self, key: str) -> int:
        cutoff = self._clock() - self.window_seconds
        with self._lock:
            hits = self._hits.get(key)
            if not hits:
                return self.max_requests
            return self.max_requests - sum(1 for stamp in hits if stamp > cutoff)

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._next_sweep = self._clock() + self.window_seconds
