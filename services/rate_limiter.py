"""
rate_limiter.py
Throttles receipt verification per user and action. Every verification costs a
round trip to Apple or Google, so a client stuck in a retry loop is cut off here
instead of at the store.

Process-local: each worker keeps its own counters.
"""

import time
from collections import defaultdict, deque
from threading import Lock
from typing import Callable, Deque, Dict, Hashable

from config import SubscriptionLifecycle


class ReceiptThrottle:
    def __init__(self, limit: int, window_seconds: float = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[Hashable, Deque[float]] = defaultdict(deque)
        self._lock = Lock()

    def check(self, key: Hashable) -> float:
        """
        Record a hit for key. Returns 0 when the hit is allowed, otherwise the
        number of seconds until the oldest hit leaves the window.
        """
        now = self._clock()
        with self._lock:
            hits = self._hits[key]
            while hits and hits[0] <= now - self.window_seconds:
                hits.popleft()
            if len(hits) >= self.limit:
                return hits[0] + self.window_seconds - now
            hits.append(now)
            return 0

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()


receipt_throttle = ReceiptThrottle(SubscriptionLifecycle.VALIDATE_RATE_LIMIT)
