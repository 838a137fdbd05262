"""Unit tests for the sliding-window rate limiter."""

from __future__ import annotations

import pytest

from explorable.config import RateLimitConfig
from explorable.errors import RateLimitedError
from explorable.services.rate_limit import RateLimiter


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def limiter(clock: FakeClock) -> RateLimiter:
    return RateLimiter(RateLimitConfig(requests=2, window_seconds=60), clock=clock)


class TestRateLimiter:
    def test_counts_down_then_refuses(self, limiter: RateLimiter, clock: FakeClock):
        first = limiter.hit("alice")
        clock.now += 10
        second = limiter.hit("alice")
        third = limiter.hit("alice")

        assert (first.allowed, first.remaining) == (True, 1)
        assert (second.allowed, second.remaining) == (True, 0)
        assert third.allowed is False
        assert third.reset == 1_700_000_060.0

    def test_keys_are_independent(self, limiter: RateLimiter):
        limiter.hit("alice")
        limiter.hit("alice")

        assert limiter.hit("bob").allowed is True

    def test_window_slides(self, limiter: RateLimiter, clock: FakeClock):
        limiter.hit("alice")
        clock.now += 30
        limiter.hit("alice")

        clock.now += 31
        assert limiter.hit("alice").allowed is True
        assert limiter.hit("alice").allowed is False

    def test_refused_requests_are_not_counted(self, limiter: RateLimiter, clock: FakeClock):
        limiter.hit("alice")
        limiter.hit("alice")
        for _ in range(5):
            limiter.hit("alice")

        clock.now += 61
        assert limiter.hit("alice").remaining == 1


class TestEnforce:
    def test_raises_with_details(self, limiter: RateLimiter):
        limiter.enforce("alice")
        limiter.enforce("alice")

        with pytest.raises(RateLimitedError) as exc_info:
            limiter.enforce("alice")

        error = exc_info.value
        assert error.status_code == 429
        assert error.details == {"limit": 2, "remaining": 0, "reset": 1_700_000_060}
        assert "2023-11-14T22:14:20+00:00" in error.message
        assert error.headers == {
            "X-RateLimit-Limit": "2",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "1700000060",
        }

    def test_disabled(self, clock: FakeClock):
        limiter = RateLimiter(
            RateLimitConfig(enabled=False, requests=1, window_seconds=60), clock=clock
        )

        for _ in range(3):
            limiter.enforce("alice")
