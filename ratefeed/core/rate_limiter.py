"""
Rate-limit and backoff policy shared by provider clients and the batch
processor.

One policy object per provider replaces inline sleep calls: a randomized
pause within a [min, max] band between requests, a longer fixed pause
between top-level groups (e.g. manufacturers), and exponential backoff for
retries of transient failures.
"""

import logging
import random
import threading
import time
from typing import Callable, Optional

from .config import RateLimitConfig

logger = logging.getLogger(__name__)


class RateLimitPolicy:
    """
    Pacing and retry policy for one provider.

    ``sleep`` and ``rand`` are injectable so tests run without waiting.
    """

    def __init__(
        self,
        min_delay: float = 0.0,
        max_delay: float = 0.0,
        group_delay: float = 0.0,
        page_delay: float = 0.0,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        backoff_factor: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ):
        if max_delay < min_delay:
            raise ValueError(f"max_delay {max_delay} is below min_delay {min_delay}")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.group_delay = group_delay
        self.page_delay = page_delay
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.backoff_factor = backoff_factor
        self._sleep = sleep
        self._rand = rand
        self._lock = threading.Lock()
        self._last_request: float = 0.0

    @classmethod
    def from_config(cls, config: RateLimitConfig, **overrides) -> 'RateLimitPolicy':
        """Build a policy from a provider's RateLimitConfig."""
        params = dict(
            min_delay=config.min_delay,
            max_delay=config.max_delay,
            group_delay=config.delay_between_groups,
            page_delay=config.delay_between_pages,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            backoff_factor=config.backoff_factor,
        )
        params.update(overrides)
        return cls(**params)

    @classmethod
    def immediate(cls, max_retries: int = 0) -> 'RateLimitPolicy':
        """A policy that never sleeps."""
        return cls(max_retries=max_retries, retry_delay=0.0, sleep=lambda s: None)

    def next_delay(self) -> float:
        """Pick a pause within the configured band."""
        if self.max_delay <= 0:
            return 0.0
        if self.max_delay == self.min_delay:
            return self.min_delay
        return self._rand(self.min_delay, self.max_delay)

    def wait(self) -> float:
        """Sleep for a randomized inter-request delay. Returns the delay."""
        delay = self.next_delay()
        if delay > 0:
            logger.debug(f"Waiting {delay:.2f}s")
            self._sleep(delay)
        return delay

    def wait_group(self) -> float:
        """Sleep for the fixed delay between top-level groups."""
        if self.group_delay > 0:
            logger.debug(f"Waiting {self.group_delay:.2f}s before next group")
            self._sleep(self.group_delay)
        return self.group_delay

    def wait_page(self) -> float:
        """Sleep for the short delay between pages of a paginated call."""
        if self.page_delay > 0:
            self._sleep(self.page_delay)
        return self.page_delay

    def throttle(self, min_interval: Optional[float] = None) -> None:
        """
        Ensure at least ``min_interval`` seconds since the previous throttle call.

        Used by clients that may be shared across threads.
        """
        interval = self.min_delay if min_interval is None else min_interval
        if interval <= 0:
            return
        with self._lock:
            elapsed = time.monotonic() - self._last_request
            remaining = interval - elapsed
            if remaining > 0:
                self._sleep(remaining)
            self._last_request = time.monotonic()

    def backoff(self, attempt: int) -> float:
        """
        Delay before retry number ``attempt`` (1-based).

        retry_delay * backoff_factor ** (attempt - 1)
        """
        return self.retry_delay * (self.backoff_factor ** max(0, attempt - 1))

    def sleep_backoff(self, attempt: int) -> float:
        delay = self.backoff(attempt)
        if delay > 0:
            logger.debug(f"Backing off {delay:.2f}s before attempt {attempt + 1}")
            self._sleep(delay)
        return delay
