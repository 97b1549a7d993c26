# tests/test_rate_limit.py

import pytest

from market_sync.connection.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_rate_limiter_enforces_delay():
    """
    Back-to-back calls are spaced one interval apart.
    """
    clock = FakeClock()
    # 10 calls per second = 0.1s interval
    limiter = RateLimiter(calls_per_second=10, clock=clock, sleep=clock.sleep)

    for _ in range(5):
        limiter.wait()

    assert len(clock.sleeps) == 4
    assert all(s == pytest.approx(0.1) for s in clock.sleeps)
    assert clock.now == pytest.approx(100.4)


def test_first_call_never_waits():
    clock = FakeClock(now=0.0)
    limiter = RateLimiter(calls_per_second=2, clock=clock, sleep=clock.sleep)

    assert limiter.wait() == 0.0
    assert clock.sleeps == []


def test_rate_limiter_no_delay_for_slow_calls():
    """
    If calls are naturally slower than the limit, no extra delay is added.
    """
    clock = FakeClock()
    limiter = RateLimiter(calls_per_second=5, clock=clock, sleep=clock.sleep)  # 0.2s interval

    limiter.wait()
    clock.now += 0.3
    slept = limiter.wait()

    assert slept == 0.0
    assert clock.sleeps == []


def test_partial_interval_only_sleeps_remainder():
    clock = FakeClock()
    limiter = RateLimiter(calls_per_second=10, clock=clock, sleep=clock.sleep)

    limiter.wait()
    clock.now += 0.04
    slept = limiter.wait()

    assert slept == pytest.approx(0.06)


def test_rate_limiter_init_with_zero_rate():
    with pytest.raises(ValueError):
        RateLimiter(0)
    with pytest.raises(ValueError):
        RateLimiter(-1)
