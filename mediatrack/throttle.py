# mediatrack/throttle.py
"""
In-process sliding window throttle.

Each key remembers the timestamps of its recent hits. A hit is allowed while
fewer than `limit` hits fall inside the last `window_seconds`; otherwise the
caller gets the number of seconds until the oldest hit leaves the window.
"""
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Tuple

class SlidingWindowThrottle:
    def __init__(self, limit: int, window_seconds: float, clock: Callable[[], float] = time.monotonic):
        if limit < 1 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str) -> Tuple[bool, float]:
        """Record an attempt for `key`. Returns (allowed, retry_after_seconds)."""
        now = self.clock()
        with self._lock:
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                return False, max(0.0, hits[0] + self.window_seconds - now)
            hits.append(now)
            return True, 0.0

    def remaining(self, key: str) -> int:
        now = self.clock()
        with self._lock:
            hits = self._hits.get(key, ())
            return self.limit - sum(1 for t in hits if t > now - self.window_seconds)

    def reset(self, key: str) -> None:
        with self._lock:
            self._hits.pop(key, None)
