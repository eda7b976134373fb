"""Tests for the retry policy with exponential backoff."""

import pytest

from apilayer.providers.retry import RetryPolicy


class TestRetryPolicy:
    """Test RetryPolicy configuration."""

    def test_default_values(self):
        """Test default retry policy values."""
        policy = RetryPolicy()

        assert policy.max_retries == 5
        assert policy.base_delay == 0.5
        assert policy.max_delay == 30.0
        assert policy.exponential_base == 2.0
        assert policy.jitter == 0.1

    def test_calculate_delay(self):
        """Test exponential delay calculation."""
        policy = RetryPolicy(base_delay=0.5, max_delay=10.0, exponential_base=2.0)

        # Attempt 0: 0.5 * 2^0 = 0.5
        assert policy.calculate_delay(0) == 0.5
        # Attempt 1: 0.5 * 2^1 = 1.0
        assert policy.calculate_delay(1) == 1.0
        # Attempt 3: 0.5 * 2^3 = 4.0
        assert policy.calculate_delay(3) == 4.0

    def test_calculate_delay_capped_at_max(self):
        """Test delay is capped at max_delay."""
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, exponential_base=2.0)

        assert policy.calculate_delay(2) == 4.0
        # Attempt 3: 1.0 * 2^3 = 8.0, but capped at 5.0
        assert policy.calculate_delay(3) == 5.0
        assert policy.calculate_delay(10) == 5.0

    def test_backoff_without_jitter_is_exact(self):
        policy = RetryPolicy(base_delay=1.0, jitter=0)
        assert [policy.backoff(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_backoff_jitter_bounds(self):
        """Jitter is drawn from [0, jitter * delay] and added on top."""
        calls = []

        def fake_uniform(low, high):
            calls.append((low, high))
            return high

        policy = RetryPolicy(base_delay=2.0, jitter=0.25, random_source=fake_uniform)
        assert policy.backoff(1) == 5.0
        assert calls == [(0.0, 1.0)]

    def test_can_retry(self):
        policy = RetryPolicy(max_retries=3)
        assert policy.can_retry(1)
        assert policy.can_retry(2)
        assert not policy.can_retry(3)

    @pytest.mark.parametrize("kwargs", [
        {"max_retries": 0},
        {"base_delay": 0},
        {"max_delay": -1},
        {"jitter": -0.1},
    ])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)
