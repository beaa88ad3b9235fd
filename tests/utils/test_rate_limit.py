from __future__ import annotations

import pytest

from app.utils.rate_limit import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_try_acquire_reports_wait_until_oldest_call_expires() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_calls=2, window_seconds=10, clock=clock)

    assert limiter.try_acquire() == (True, None)
    clock.now += 4
    assert limiter.try_acquire() == (True, None)
    acquired, retry_after = limiter.try_acquire()

    assert acquired is False
    assert retry_after == pytest.approx(6.0)
    assert limiter.in_window() == 2


def test_window_slides_instead_of_resetting() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_calls=2, window_seconds=10, clock=clock)
    limiter.try_acquire()
    clock.now += 9
    limiter.try_acquire()

    clock.now += 1
    assert limiter.try_acquire()[0] is True
    assert limiter.try_acquire()[0] is False


@pytest.mark.asyncio
async def test_acquire_blocks_until_a_slot_frees() -> None:
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(
        max_calls=3, window_seconds=60, clock=clock, sleep=clock.sleep
    )

    for _ in range(4):
        await limiter.acquire()

    assert clock.sleeps == [pytest.approx(60.0)]
    assert clock.now == pytest.approx(160.0)


def test_invalid_limits_are_rejected() -> None:
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_calls=0, window_seconds=1)
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(max_calls=1, window_seconds=0)
