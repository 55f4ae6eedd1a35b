"""Sliding-window limiter for job starts."""

from __future__ import annotations

import logging
import time
from collections import deque
from typing import Callable, Deque


logger = logging.getLogger(__name__)


class JobRateLimiter:
    """Caps the number of job starts within a rolling window.

    The limit applies to all jobs regardless of priority or audit type.

    Example:
        >>> limiter = JobRateLimiter(max_starts=10, window_seconds=60)
        >>> if limiter.try_acquire():
        ...     pass  # start the job
    """

    def __init__(
        self,
        max_starts: int = 10,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_starts < 1:
            raise ValueError("max_starts must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.max_starts = max_starts
        self.window_seconds = window_seconds
        self._clock = clock
        self._starts: Deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._starts and self._starts[0] <= now - self.window_seconds:
            self._starts.popleft()

    def try_acquire(self) -> bool:
        """Record a start if the window has room.

        Returns:
            True if the caller may start a job now
        """
        now = self._clock()
        self._evict(now)
        if len(self._starts) >= self.max_starts:
            logger.debug(
                "Job start rate limit reached",
                extra={"max_starts": self.max_starts, "window_seconds": self.window_seconds},
            )
            return False
        self._starts.append(now)
        return True

    def time_until_available(self) -> float:
        """Seconds until the next start would be admitted."""
        now = self._clock()
        self._evict(now)
        if len(self._starts) < self.max_starts:
            return 0.0
        return max(0.0, self._starts[0] + self.window_seconds - now)

    def remaining(self) -> int:
        self._evict(self._clock())
        return self.max_starts - len(self._starts)
