"""Tests for the local rate limiter."""
import pytest

from venue_relay.exceptions import RateLimitTimeoutError
from venue_relay.services.rate_limiter import RateLimiter


class ManualTime:
    """Monotonic clock plus a sleep that only moves it."""

    def __init__(self):
        self.now = 1000.0
        self.slept = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


def limiter(time: ManualTime, **kwargs) -> RateLimiter:
    return RateLimiter(clock=time.clock, sleep=time.sleep, **kwargs)


class TestTryAcquire:
    def test_global_ceiling_per_second(self):
        time = ManualTime()
        rl = limiter(time, max_per_second=3, per_chat_interval=0)
        assert [rl.try_acquire() for _ in range(4)] == [True, True, True, False]

        time.now += 1.0
        assert rl.try_acquire() is True

    def test_window_slides(self):
        time = ManualTime()
        rl = limiter(time, max_per_second=2, per_chat_interval=0)
        assert rl.try_acquire() is True
        time.now += 0.6
        assert rl.try_acquire() is True
        assert rl.try_acquire() is False
        # first permit leaves the window, second is still inside
        time.now += 0.5
        assert rl.try_acquire() is True
        assert rl.try_acquire() is False

    def test_per_chat_spacing(self):
        time = ManualTime()
        rl = limiter(time, max_per_second=100, per_chat_interval=1.0)
        assert rl.try_acquire(1) is True
        assert rl.try_acquire(1) is False
        assert rl.try_acquire(2) is True
        time.now += 1.0
        assert rl.try_acquire(1) is True


class TestAcquire:
    @pytest.mark.asyncio
    async def test_waits_for_chat_slot(self):
        time = ManualTime()
        rl = limiter(time, max_per_second=100, per_chat_interval=1.0, max_wait=5.0)
        await rl.acquire(7)
        await rl.acquire(7)
        assert time.slept == [1.0]

    @pytest.mark.asyncio
    async def test_waits_for_global_window(self):
        time = ManualTime()
        rl = limiter(time, max_per_second=2, per_chat_interval=0, max_wait=5.0)
        for _ in range(3):
            await rl.acquire()
        assert time.slept == [1.0]

    @pytest.mark.asyncio
    async def test_wait_is_bounded(self):
        time = ManualTime()
        rl = limiter(time, max_per_second=100, per_chat_interval=30.0, max_wait=10.0)
        await rl.acquire(7)
        with pytest.raises(RateLimitTimeoutError) as exc_info:
            await rl.acquire(7)
        assert exc_info.value.wait_seconds == 30.0
        assert exc_info.value.details["max_wait_seconds"] == 10.0
        assert time.slept == []
