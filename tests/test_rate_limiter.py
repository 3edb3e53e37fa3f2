"""Tests for the pacing and backoff policy."""

import pytest

from ratefeed.core.config import RateLimitConfig
from ratefeed.core.rate_limiter import RateLimitPolicy


class TestDelays:

    def test_band_uses_rand(self):
        sleeps = []
        policy = RateLimitPolicy(min_delay=1.0, max_delay=3.0, sleep=sleeps.append, rand=lambda a, b: (a + b) / 2)

        assert policy.wait() == 2.0
        assert sleeps == [2.0]

    def test_group_and_page_delays(self):
        sleeps = []
        policy = RateLimitPolicy(group_delay=5.0, page_delay=0.2, sleep=sleeps.append)

        policy.wait_group()
        policy.wait_page()
        policy.wait()

        assert sleeps == [5.0, 0.2]

    def test_inverted_band_rejected(self):
        with pytest.raises(ValueError):
            RateLimitPolicy(min_delay=2.0, max_delay=1.0)

    def test_immediate_never_sleeps(self):
        def fail(seconds):
            raise AssertionError("slept")

        policy = RateLimitPolicy.immediate()
        policy._sleep = fail
        policy.wait()
        policy.wait_group()
        policy.sleep_backoff(3)
        assert policy.max_retries == 0


class TestBackoff:

    def test_exponential(self):
        policy = RateLimitPolicy(retry_delay=2.0, backoff_factor=3.0)
        assert [policy.backoff(n) for n in (1, 2, 3)] == [2.0, 6.0, 18.0]

    def test_from_config(self):
        config = RateLimitConfig(min_delay=1.0, max_delay=2.0, delay_between_groups=4.0, max_retries=5)
        policy = RateLimitPolicy.from_config(config, max_retries=1)

        assert policy.group_delay == 4.0
        assert policy.min_delay == 1.0
        assert policy.max_retries == 1
