"""
Tests for the global request spacing limiter.
"""

import asyncio
import time

import pytest

from harvestcore.crawler.rate_limiter import RateLimiter


class FakeClock:
    """Monotonic clock advanced only by the limiter's own sleeps."""

    def __init__(self):
        self.now = 100.0
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
        await asyncio.sleep(0)


@pytest.mark.unit
class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_caller_is_not_delayed(self):
        """The first request goes out immediately."""
        clock = FakeClock()
        limiter = RateLimiter(2.5, clock=clock, sleep=clock.sleep)

        delay = await limiter.wait_turn()

        assert delay == 0.0
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_second_caller_waits_for_remaining_interval(self):
        """A caller arriving early waits only for what is left of the interval."""
        clock = FakeClock()
        limiter = RateLimiter(2.5, clock=clock, sleep=clock.sleep)

        await limiter.wait_turn()
        clock.now += 1.0
        delay = await limiter.wait_turn()

        assert delay == pytest.approx(1.5)
        assert clock.sleeps == [pytest.approx(1.5)]

    @pytest.mark.asyncio
    async def test_no_wait_once_interval_elapsed(self):
        clock = FakeClock()
        limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)

        await limiter.wait_turn()
        clock.now += 5.0

        assert await limiter.wait_turn() == 0.0

    @pytest.mark.asyncio
    async def test_concurrent_callers_are_serialized(self):
        """Spacing applies to the aggregate stream, not to each caller."""
        clock = FakeClock()
        limiter = RateLimiter(1.0, clock=clock, sleep=clock.sleep)
        admitted = []

        async def caller(name: str) -> None:
            await limiter.wait_turn()
            admitted.append(clock())

        await asyncio.gather(*(caller(str(i)) for i in range(5)))

        gaps = [b - a for a, b in zip(admitted, admitted[1:])]
        assert len(admitted) == 5
        assert all(gap == pytest.approx(1.0) for gap in gaps)
        assert limiter.admitted == 5

    @pytest.mark.asyncio
    async def test_real_clock_spacing(self):
        """With the real clock consecutive admissions are at least the interval apart."""
        limiter = RateLimiter(0.05)

        stamps = []
        for _ in range(3):
            await limiter.wait_turn()
            stamps.append(time.monotonic())

        assert stamps[1] - stamps[0] >= 0.045
        assert stamps[2] - stamps[1] >= 0.045

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            RateLimiter(-1)

    @pytest.mark.asyncio
    async def test_reset_admits_next_caller_immediately(self):
        clock = FakeClock()
        limiter = RateLimiter(10.0, clock=clock, sleep=clock.sleep)

        await limiter.wait_turn()
        limiter.reset()

        assert await limiter.wait_turn() == 0.0
