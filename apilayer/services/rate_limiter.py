"""Client-side sliding window rate limiting.

The limiter keeps one timestamp per admitted call and counts the ones inside
the trailing window. Admission never sleeps itself: it returns how long the
caller has to wait, so the caller decides how to suspend.
"""

import math
import threading
import time
from collections import deque
from typing import Callable

from apilayer.core.logging import get_logger
from apilayer.models import RateLimitStatus

logger = get_logger(__name__)


class SlidingWindowRateLimiter:
    """Admit at most ``max_calls`` calls per rolling ``window_seconds``.

    Check-and-append happens under one lock, so concurrent admitters (event
    loop tasks or threads) can never overshoot the cap. The lock is only held
    for the bookkeeping and never across a suspension point.

    Example:
        >>> limiter = SlidingWindowRateLimiter(max_calls=2, window_seconds=1.0)
        >>> limiter.admit()
        0.0
    """

    def __init__(
        self,
        max_calls: int = 60,
        window_seconds: float = 60.0,
        max_defer: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            max_calls: Maximum admissions inside one window
            window_seconds: Length of the sliding window in seconds
            max_defer: Longest server-signalled pause honoured, in seconds
            clock: Time source, seconds as float
        """
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if max_defer <= 0:
            raise ValueError("max_defer must be positive")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self.max_defer = max_defer
        self._clock = clock
        self._records: deque[float] = deque()
        self._blocked_until = 0.0
        self._lock = threading.Lock()

    def _purge(self, now: float) -> None:
        boundary = now - self.window_seconds
        while self._records and self._records[0] <= boundary:
            self._records.popleft()

    def admit(self) -> float:
        """Try to admit one call.

        Returns:
            0.0 when the call is admitted (a record is appended), otherwise
            the number of seconds to wait before asking again.
        """
        with self._lock:
            now = self._clock()
            if now < self._blocked_until:
                return self._blocked_until - now

            self._purge(now)
            if len(self._records) < self.max_calls:
                self._records.append(now)
                return 0.0

            wait = self._records[0] + self.window_seconds - now
            logger.debug(
                f"Rate limit reached ({self.max_calls}/{self.window_seconds}s), "
                f"next slot in {wait:.2f}s"
            )
            return wait

    def defer(self, retry_after: float) -> None:
        """Honour a server-signalled retry-after.

        The next admission waits out ``retry_after`` seconds from now,
        whatever the local window says. The pause is capped at ``max_defer``.
        """
        if math.isnan(retry_after) or retry_after <= 0:
            return
        if retry_after > self.max_defer:
            logger.warning(
                f"Server requested a {retry_after:.2f}s pause, capping at {self.max_defer:g}s"
            )
            retry_after = self.max_defer
        with self._lock:
            self._blocked_until = max(self._blocked_until, self._clock() + retry_after)
        logger.info(f"Server requested a {retry_after:.2f}s pause before the next call")

    def status(self) -> RateLimitStatus:
        with self._lock:
            now = self._clock()
            self._purge(now)
            used = len(self._records)
            reset_after = (
                self._records[0] + self.window_seconds - now if self._records else 0.0
            )
            return RateLimitStatus(
                limit=self.max_calls,
                remaining=max(0, self.max_calls - used),
                reset_after=reset_after,
                blocked_for=max(0.0, self._blocked_until - now),
            )

    def reset(self) -> None:
        """Forget every record and any server-imposed pause."""
        with self._lock:
            self._records.clear()
            self._blocked_until = 0.0
