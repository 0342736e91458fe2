"""
Fixed-window rate limiter tests.
"""

import pytest

from metarelay.engine.exceptions import RateLimited
from metarelay.facilitator.ratelimit import FixedWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestFixedWindowRateLimiter:

    def test_n_plus_one_rejected_inside_window(self, clock):
        limiter = FixedWindowRateLimiter(3, 60, clock=clock)
        for expected_remaining in (2, 1, 0):
            assert limiter.hit("alice").remaining == expected_remaining

        with pytest.raises(RateLimited):
            limiter.hit("alice")

    def test_first_request_after_window_succeeds(self, clock):
        limiter = FixedWindowRateLimiter(2, 60, clock=clock)
        limiter.hit("alice")
        limiter.hit("alice")
        clock.advance(60)

        status = limiter.hit("alice")

        assert status.allowed
        assert status.remaining == 1

    def test_retry_after_is_time_left_in_window(self, clock):
        limiter = FixedWindowRateLimiter(1, 3600, clock=clock)
        limiter.hit("alice")
        clock.advance(600)

        with pytest.raises(RateLimited) as exc:
            limiter.hit("alice")

        assert exc.value.retry_after == pytest.approx(3000)
        assert exc.value.details["retryAfter"] == pytest.approx(3000)
        assert 0 < exc.value.retry_after <= 3600

    def test_keys_are_independent(self, clock):
        limiter = FixedWindowRateLimiter(1, 60, clock=clock)
        limiter.hit("alice")

        assert limiter.hit("bob").allowed
        with pytest.raises(RateLimited):
            limiter.hit("alice")

    def test_window_resets_per_key(self, clock):
        limiter = FixedWindowRateLimiter(1, 60, clock=clock)
        limiter.hit("alice")
        clock.advance(30)
        limiter.hit("bob")
        clock.advance(30)

        # alice's window expired, bob's has 30s left
        assert limiter.hit("alice").allowed
        with pytest.raises(RateLimited) as exc:
            limiter.hit("bob")
        assert exc.value.retry_after == pytest.approx(30)

    def test_rejected_hits_do_not_extend_window(self, clock):
        limiter = FixedWindowRateLimiter(1, 60, clock=clock)
        limiter.hit("alice")
        for _ in range(5):
            clock.advance(10)
            with pytest.raises(RateLimited):
                limiter.hit("alice")
        clock.advance(10)
        assert limiter.hit("alice").allowed

    def test_peek_does_not_count(self, clock):
        limiter = FixedWindowRateLimiter(1, 60, clock=clock)

        assert limiter.peek("alice").remaining == 1
        assert limiter.hit("alice").remaining == 0
        status = limiter.peek("alice")
        assert not status.allowed
        assert status.retry_after_seconds == pytest.approx(60)

    def test_sweep_drops_expired_windows(self, clock):
        limiter = FixedWindowRateLimiter(5, 60, clock=clock)
        limiter.hit("alice")
        limiter.hit("bob")
        clock.advance(61)
        limiter.hit("carol")

        assert limiter.sweep() == 2
        assert len(limiter) == 1

    def test_opportunistic_sweep(self, clock):
        limiter = FixedWindowRateLimiter(5, 60, clock=clock, sweep_every=3)
        limiter.hit("a")
        limiter.hit("b")
        clock.advance(61)
        limiter.hit("c")  # third hit triggers the sweep before counting

        assert len(limiter) == 1

    @pytest.mark.parametrize("limit, window", [(0, 60), (1, 0)])
    def test_invalid_configuration(self, limit, window):
        with pytest.raises(ValueError):
            FixedWindowRateLimiter(limit, window)
