"""Tests for the per-IP fixed-window limiter."""

from app.services.rate_limit import FixedWindowRateLimiter


class FakeTime:
    def __init__(self, value: float = 1_000.0):
        self.value = value

    def __call__(self) -> float:
        return self.value


def test_allows_up_to_limit_then_blocks():
    limiter = FixedWindowRateLimiter(limit=5, window_seconds=300, clock=FakeTime(900.0))

    results = [limiter.check("10.0.0.1") for _ in range(6)]

    assert [info.allowed for info in results] == [True] * 5 + [False]
    assert [info.remaining for info in results[:5]] == [4, 3, 2, 1, 0]
    assert results[-1].retry_after == 300


def test_keys_are_independent():
    limiter = FixedWindowRateLimiter(limit=1, window_seconds=60, clock=FakeTime())

    assert limiter.check("10.0.0.1").allowed
    assert not limiter.check("10.0.0.1").allowed
    assert limiter.check("10.0.0.2").allowed


def test_window_resets():
    clock = FakeTime(900.0)
    limiter = FixedWindowRateLimiter(limit=1, window_seconds=300, clock=clock)
    assert limiter.check("ip").allowed
    assert not limiter.check("ip").allowed

    clock.value = 1_200.0

    assert limiter.check("ip").allowed
