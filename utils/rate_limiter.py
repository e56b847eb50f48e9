import logging
import threading
import time
from collections import defaultdict, deque

logger = logging.getLogger(__name__)


class RateLimiter:
    """In-memory sliding window limiter, one window per key."""

    def __init__(self, limit, window_seconds, clock=time.monotonic):
        self.limit = limit
        self.window = window_seconds
        self.clock = clock
        self._hits = defaultdict(deque)
        self._lock = threading.Lock()
        self._last_sweep = clock()

    def allow(self, key):
        """Record a hit for ``key`` and report whether it is within the limit"""
        now = self.clock()
        with self._lock:
            if now - self._last_sweep >= self.window:
                self._sweep(now)
            hits = self._hits[key]
            while hits and now - hits[0] >= self.window:
                hits.popleft()
            if len(hits) >= self.limit:
                logger.warning(f"Rate limit reached for {key} ({self.limit} per {self.window}s)")
                return False
            hits.append(now)
            return True

    def _sweep(self, now):
        # a key whose newest hit is outside the window has no live hits
        stale = [key for key, hits in self._hits.items() if not hits or now - hits[-1] >= self.window]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now

    def reset(self):
        with self._lock:
            self._hits.clear()
