"""Throughput limiter shared by all queue workers"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Sliding-window rate limiter: at most `max_jobs` acquisitions in any
    `window_seconds` interval.

    Independent of worker concurrency: with idle workers available, the
    limiter still holds throughput to the configured ceiling.

    Thread-safe.
    """

    def __init__(
        self,
        max_jobs: int = 10,
        window_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_jobs < 1:
            raise ValueError("max_jobs must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_jobs = max_jobs
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep
        self._grants = deque()
        self._lock = threading.Lock()

        # Statistics
        self._total_acquired = 0
        self._total_wait_time = 0.0

    def _expire(self, now: float) -> None:
        """Drop grants older than the window. Must be called with lock held."""
        while self._grants and now - self._grants[0] >= self.window_seconds:
            self._grants.popleft()

    def try_acquire(self) -> bool:
        """Take a slot without waiting."""
        with self._lock:
            now = self._clock()
            self._expire(now)
            if len(self._grants) < self.max_jobs:
                self._grants.append(now)
                self._total_acquired += 1
                return True
            return False

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Take a slot, waiting until one frees up.

        Args:
            timeout: Maximum time to wait in seconds. None means wait forever.

        Returns:
            True if a slot was acquired, False if timeout was reached.
        """
        start = self._clock()
        while True:
            with self._lock:
                now = self._clock()
                self._expire(now)
                if len(self._grants) < self.max_jobs:
                    self._grants.append(now)
                    self._total_acquired += 1
                    return True
                wait_time = self.window_seconds - (now - self._grants[0])

            if timeout is not None:
                elapsed = self._clock() - start
                if elapsed >= timeout:
                    return False
                wait_time = min(wait_time, timeout - elapsed)

            if wait_time > 0.01:
                logger.debug(f"Rate limit: waiting {wait_time:.3f}s for a slot")
            self._total_wait_time += max(wait_time, 0.0)
            self._sleep(max(wait_time, 0.001))

    def refund(self) -> None:
        """Return the most recent slot (the caller found no job to run)."""
        with self._lock:
            if self._grants:
                self._grants.pop()
                self._total_acquired -= 1

    @property
    def stats(self) -> dict:
        with self._lock:
            self._expire(self._clock())
            return {
                "max_jobs": self.max_jobs,
                "window_seconds": self.window_seconds,
                "in_window": len(self._grants),
                "total_acquired": self._total_acquired,
                "total_wait_time": self._total_wait_time,
            }
