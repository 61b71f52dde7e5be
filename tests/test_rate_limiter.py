import asyncio
import time

import pytest

from smolbot.errors import RateLimitTimeout
from smolbot.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, t: float = 0.0):
        self.t = t
    def __call__(self):
        return self.t


def test_rejects_invalid_arguments():
    with pytest.raises(ValueError):
        RateLimiter(max_tokens=0)
    with pytest.raises(ValueError):
        RateLimiter(window_seconds=0)


def test_k_admitted_then_next_waits_for_rollover():
    async def _run():
        limiter = RateLimiter(max_tokens=3, window_seconds=0.2, max_wait_seconds=5)
        for _ in range(3):
            await limiter.acquire()
        assert limiter.status().available_tokens == 0
        start = time.monotonic()
        await limiter.acquire()
        waited = time.monotonic() - start
        await limiter.aclose()
        return waited

    waited = asyncio.run(_run())
    assert waited >= 0.1


def test_waiter_rejected_after_ceiling():
    async def _run():
        limiter = RateLimiter(max_tokens=1, window_seconds=10, max_wait_seconds=0.1)
        await limiter.acquire()
        with pytest.raises(RateLimitTimeout) as exc:
            await limiter.acquire()
        assert limiter.status().queue_length == 0
        await limiter.aclose()
        return exc.value

    err = asyncio.run(_run())
    assert err.max_wait_seconds == 0.1
    assert err.waited_seconds >= 0.05


def test_waiters_are_served_fifo():
    async def _run():
        limiter = RateLimiter(max_tokens=1, window_seconds=0.05, max_wait_seconds=5)
        await limiter.acquire()
        order = []

        async def worker(i):
            await limiter.acquire()
            order.append(i)

        await asyncio.gather(*(worker(i) for i in range(4)))
        await limiter.aclose()
        return order

    assert asyncio.run(_run()) == [0, 1, 2, 3]


def test_cancelled_waiter_leaves_queue():
    async def _run():
        limiter = RateLimiter(max_tokens=1, window_seconds=30, max_wait_seconds=30)
        await limiter.acquire()
        task = asyncio.create_task(limiter.acquire())
        await asyncio.sleep(0)
        queued = limiter.status().queue_length
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        after = limiter.status().queue_length
        await limiter.aclose()
        return queued, after

    assert asyncio.run(_run()) == (1, 0)


def test_window_advances_by_whole_multiples():
    async def _run():
        clock = FakeClock(0.0)
        limiter = RateLimiter(max_tokens=2, window_seconds=60, max_wait_seconds=300, clock=clock)
        await limiter.acquire()
        await limiter.acquire()
        full = limiter.status()
        clock.t = 125.0
        rolled = limiter.status()
        return full, rolled

    full, rolled = asyncio.run(_run())
    assert full.available_tokens == 0
    assert rolled.available_tokens == 2
    # window start moved to 120, not 125
    assert rolled.window_remaining_seconds == pytest.approx(55.0)
