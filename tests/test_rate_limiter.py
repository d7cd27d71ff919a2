"""
Tests for the shared token-bucket rate limiter.
"""

import asyncio
import pytest

from adsync.rate_limiter import RateLimitTimeout, TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_rejects_invalid_configuration():
    with pytest.raises(ValueError):
        TokenBucket(capacity=0)
    with pytest.raises(ValueError):
        TokenBucket(refill_rate=0)


def test_refill_is_capped_at_capacity():
    clock = FakeClock()
    bucket = TokenBucket(capacity=3, refill_rate=2.0, clock=clock)
    clock.now = 100.0
    assert bucket.available_tokens == 3


@pytest.mark.anyio
async def test_burst_then_caller_waits_for_refill():
    clock = FakeClock()
    bucket = TokenBucket(capacity=3, refill_rate=1.0, timeout=10, poll_interval=0.001, clock=clock)

    for _ in range(3):
        await bucket.acquire()
    assert bucket.available_tokens == 0

    waiter = asyncio.create_task(bucket.acquire())
    await asyncio.sleep(0.02)
    assert not waiter.done()
    assert bucket.queue_length == 1

    clock.now += 1.0
    await asyncio.wait_for(waiter, timeout=1)
    assert bucket.queue_length == 0


@pytest.mark.anyio
async def test_waiters_are_served_in_arrival_order():
    clock = FakeClock()
    bucket = TokenBucket(capacity=1, refill_rate=1.0, timeout=10, poll_interval=0.001, clock=clock)
    await bucket.acquire()

    served = []

    async def take(name):
        await bucket.acquire()
        served.append(name)

    first = asyncio.create_task(take("first"))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(take("second"))
    await asyncio.sleep(0.01)
    assert bucket.queue_length == 2

    clock.now += 1.0
    await asyncio.wait_for(first, timeout=1)
    assert served == ["first"]
    assert not second.done()

    clock.now += 1.0
    await asyncio.wait_for(second, timeout=1)
    assert served == ["first", "second"]


@pytest.mark.anyio
async def test_queued_caller_times_out():
    clock = FakeClock()
    bucket = TokenBucket(capacity=1, refill_rate=0.001, timeout=0, poll_interval=0.001, clock=clock)
    await bucket.acquire()

    with pytest.raises(RateLimitTimeout):
        await bucket.acquire()
    assert bucket.queue_length == 0
