import asyncio

import pytest

from taskgate.config_loader import RateLimitConfig
from taskgate.event_bus import EventBus
from taskgate.rate_limiter import RateLimiter, RateLimitExceeded


class FakeClock:
    """Virtual time: sleeping advances the clock instantly."""

    def __init__(self, now: float = 0.0):
        self.now = now
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def make_limiter(clock: FakeClock, bus: EventBus | None = None, **overrides) -> RateLimiter:
    config = RateLimitConfig(**{"tokens_per_minute": 100, "requests_per_minute": 50, **overrides})
    return RateLimiter(config, bus=bus, clock=clock, sleep=clock.sleep)


@pytest.mark.asyncio
async def test_admits_immediately_under_budget():
    clock = FakeClock()
    limiter = make_limiter(clock)

    assert await limiter.check_rate_limit(50) is True
    assert clock.slept == []


@pytest.mark.asyncio
async def test_waits_until_oldest_usage_leaves_window():
    clock = FakeClock()
    bus = EventBus()
    events = []
    bus.subscribe(events.append)
    limiter = make_limiter(clock, bus=bus)

    limiter.record_usage(90, "req_a")
    clock.now = 1.0

    assert await limiter.check_rate_limit(20, "req_b") is True

    # The 90-token record expires at t=60, never earlier
    assert clock.now >= 60.0
    assert clock.now < 61.0
    types = [e.event_type for e in events]
    assert "rate_limit_wait" in types
    assert "rate_limit_progress" in types
    assert types[-1] == "rate_limit_admitted"


@pytest.mark.asyncio
async def test_request_count_budget_blocks():
    clock = FakeClock()
    limiter = make_limiter(clock, tokens_per_minute=10_000, requests_per_minute=2)

    limiter.record_usage(1)
    clock.now = 5.0
    limiter.record_usage(1)
    clock.now = 10.0

    await limiter.check_rate_limit(1)

    assert clock.now >= 60.0


@pytest.mark.asyncio
async def test_minimal_wait_is_admitted_without_sleeping():
    clock = FakeClock()
    limiter = make_limiter(clock, min_wait_seconds=5)

    limiter.record_usage(90)
    clock.now = 57.0

    assert await limiter.check_rate_limit(20) is True
    assert clock.slept == []


@pytest.mark.asyncio
async def test_forced_admission_after_max_attempts():
    clock = FakeClock()
    limiter = make_limiter(clock, max_attempts=2)

    # Larger than the whole budget, so waiting can never make it fit
    limiter.record_usage(100)
    assert await limiter.check_rate_limit(500) is True

    # One wait for the recorded usage to expire, then nothing left to wait for
    assert clock.now == 60.0


@pytest.mark.asyncio
async def test_raises_when_forced_admission_disabled():
    clock = FakeClock()
    limiter = make_limiter(clock, max_attempts=1, admit_after_max_attempts=False)

    limiter.record_usage(100)
    with pytest.raises(RateLimitExceeded):
        await limiter.check_rate_limit(500)


@pytest.mark.asyncio
async def test_cancel_waiting_requests_releases_waiters():
    released_clock = FakeClock()

    async def idle(seconds: float) -> None:
        await asyncio.sleep(0)

    limiter = RateLimiter(
        RateLimitConfig(tokens_per_minute=100, max_attempts=1),
        clock=released_clock,
        sleep=idle,
    )
    limiter.record_usage(100)

    waiter = asyncio.create_task(limiter.check_rate_limit(50))
    for _ in range(5):
        await asyncio.sleep(0)
    assert limiter.waiting_count == 1

    limiter.cancel_waiting_requests()
    assert await asyncio.wait_for(waiter, timeout=1) is True
    assert limiter.waiting_count == 0


def test_usage_snapshot_and_window_expiry():
    clock = FakeClock()
    limiter = make_limiter(clock)

    limiter.record_usage(30)
    clock.now = 20.0
    limiter.record_usage(20)

    snapshot = limiter.get_current_usage()
    assert snapshot.tokens == 50
    assert snapshot.requests == 2
    assert snapshot.percent_used == 50
    assert snapshot.time_until_reset == 40.0

    # Exactly one window after the first record, it no longer counts
    clock.now = 60.0
    snapshot = limiter.get_current_usage()
    assert snapshot.tokens == 20
    assert snapshot.requests == 1


def test_reset_and_update_config():
    clock = FakeClock()
    limiter = make_limiter(clock)
    limiter.record_usage(80)

    limiter.reset()
    assert limiter.get_current_usage().tokens == 0

    limiter.update_config(tokens_per_minute=1000)
    config = limiter.get_config()
    assert config.tokens_per_minute == 1000
    assert config.burst_threshold == 800
    assert config.requests_per_minute == 50

    # get_config hands out a copy
    config.tokens_per_minute = 1
    assert limiter.get_config().tokens_per_minute == 1000
