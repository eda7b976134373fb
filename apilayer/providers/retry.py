"""Retry policy with capped exponential backoff and jitter.

The policy only computes delays; the API client owns the retry loop so it
can interleave rate limiting, authentication and the call deadline.
"""

import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class RetryPolicy:
    """Configuration for retry behavior with exponential backoff.

    Attributes:
        max_retries: Maximum number of dispatch attempts per call (default: 5)
        base_delay: Delay after the first failed attempt in seconds (default: 0.5)
        max_delay: Maximum delay between attempts in seconds (default: 30.0)
        exponential_base: Base for exponential calculation (default: 2.0)
        jitter: Fraction of the delay added at random, 0 disables (default: 0.1)

    Example:
        >>> policy = RetryPolicy(base_delay=1.0, jitter=0)
        >>> policy.calculate_delay(attempt=2)
        4.0
    """

    max_retries: int = 5
    base_delay: float = 0.5
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: float = 0.1
    random_source: Callable[[float, float], float] = field(
        default=random.uniform, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay <= 0 or self.max_delay <= 0:
            raise ValueError("backoff delays must be positive")
        if self.jitter < 0:
            raise ValueError("jitter must not be negative")

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given retry attempt, without jitter.

        Uses exponential backoff: delay = min(base_delay * (exponential_base ^ attempt), max_delay)

        Args:
            attempt: The current retry attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        delay = self.base_delay * (self.exponential_base**attempt)
        return min(delay, self.max_delay)

    def backoff(self, attempt: int) -> float:
        """Delay for ``attempt`` with random jitter added on top."""
        delay = self.calculate_delay(attempt)
        if self.jitter:
            delay += self.random_source(0.0, delay * self.jitter)
        return delay

    def can_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_retries
