"""
Token-bucket rate limiter shared by every remote advertising API call.

The remote API allows a short burst (bucket capacity) and a lower sustained
rate (refill per second). Callers that find the bucket empty queue up in
FIFO order, re-check on a short polling interval, and give up with
RateLimitTimeout once the wait exceeds the configured timeout.
"""

import asyncio
import logging
import time
from collections import deque
from functools import lru_cache
from typing import Callable

from adsync.config import get_settings

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1  # seconds


class RateLimitTimeout(Exception):
    """Raised when a queued caller does not get a token in time."""


class TokenBucket:
    def __init__(
        self,
        capacity: int = 10,
        refill_rate: float = 2.0,
        timeout: float = 30.0,
        poll_interval: float = POLL_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        if capacity < 1 or refill_rate <= 0:
            raise ValueError("capacity must be >= 1 and refill_rate > 0")
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._tokens = float(capacity)  # start full
        self._last_refill = clock()
        self._waiters: deque = deque()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.refill_rate)
            self._last_refill = now

    async def acquire(self) -> None:
        """Take one token, waiting in line if the bucket is empty."""
        self._refill()
        if not self._waiters and self._tokens >= 1:
            self._tokens -= 1
            return

        ticket = object()
        self._waiters.append(ticket)
        deadline = self._clock() + self.timeout
        try:
            while True:
                await asyncio.sleep(self.poll_interval)
                self._refill()
                if self._waiters[0] is ticket and self._tokens >= 1:
                    self._tokens -= 1
                    return
                if self._clock() >= deadline:
                    logger.warning(f"Rate limiter: request queued longer than {self.timeout}s")
                    raise RateLimitTimeout("Rate limit timeout: request queued too long")
        finally:
            self._waiters.remove(ticket)

    @property
    def available_tokens(self) -> int:
        self._refill()
        return int(self._tokens)

    @property
    def queue_length(self) -> int:
        return len(self._waiters)


@lru_cache
def get_rate_limiter() -> TokenBucket:
    """Process-wide bucket; every AmazonAdsClient shares it by default."""
    settings = get_settings()
    return TokenBucket(
        capacity=settings.rate_limit_burst,
        refill_rate=settings.rate_limit_refill_per_sec,
        timeout=settings.rate_limit_timeout_seconds,
    )
