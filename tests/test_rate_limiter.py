import asyncio
import threading

import pytest

from funding_hedge.config import RateLimitConfig
from funding_hedge.rate_limiter import REST, WS, ChannelLimit, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


def _limiter(clock, capacity=3, window=10.0):
    return SlidingWindowRateLimiter(
        {REST: ChannelLimit(capacity, window), WS: ChannelLimit(2, window)},
        clock=clock,
    )


def test_try_acquire_rejects_over_capacity():
    clock = FakeClock()
    limiter = _limiter(clock)

    assert all(limiter.try_acquire(REST) for _ in range(3))
    assert not limiter.try_acquire(REST)
    assert limiter.usage(REST) == 3


def test_window_slides_oldest_out():
    clock = FakeClock()
    limiter = _limiter(clock)
    limiter.try_acquire(REST)
    clock.now += 4
    limiter.try_acquire(REST)
    limiter.try_acquire(REST)

    assert limiter.wait_time(REST) == pytest.approx(6.0)
    clock.now += 6
    assert limiter.try_acquire(REST)
    assert not limiter.try_acquire(REST)


def test_channels_are_independent():
    clock = FakeClock()
    limiter = _limiter(clock)
    for _ in range(3):
        limiter.try_acquire(REST)

    assert limiter.try_acquire(WS)
    assert limiter.try_acquire(WS)
    assert not limiter.try_acquire(WS)
    assert limiter.usage(REST) == 3


def test_weighted_requests():
    clock = FakeClock()
    limiter = _limiter(clock, capacity=40)

    assert limiter.try_acquire(REST, weight=20)
    assert limiter.try_acquire(REST, weight=20)
    assert not limiter.try_acquire(REST, weight=1)
    assert limiter.usage(REST) == 40


def test_weight_above_capacity_raises():
    limiter = _limiter(FakeClock())
    with pytest.raises(ValueError):
        limiter.try_acquire(REST, weight=4)
    with pytest.raises(ValueError):
        limiter.try_acquire("unknown")


def test_acquire_waits_until_admitted():
    limiter = SlidingWindowRateLimiter({REST: ChannelLimit(2, 0.05)})

    async def go():
        loop = asyncio.get_running_loop()
        start = loop.time()
        for _ in range(3):
            await limiter.acquire(REST)
        return loop.time() - start

    elapsed = asyncio.run(go())
    assert elapsed >= 0.04
    assert limiter.usage(REST) >= 1


def test_concurrent_threads_never_exceed_capacity():
    limiter = SlidingWindowRateLimiter({WS: ChannelLimit(50, 60.0)})
    admitted = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            if limiter.try_acquire(WS):
                with lock:
                    admitted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(admitted) == 50
    assert limiter.usage(WS) == 50


def test_from_config():
    limiter = SlidingWindowRateLimiter.from_config(RateLimitConfig(rest_capacity=5, ws_capacity=1))
    assert limiter.try_acquire(WS)
    assert not limiter.try_acquire(WS)
    assert limiter.try_acquire(REST, weight=5)
