"""
Tests for the fixed-window rate limiter.
"""

import time

import pytest

from program_engine.engine.rate_limiter import RATE_LIMITS, RateLimiter
from program_engine.exceptions import RateLimitedError


class TestRateLimiter:
    """Test cases for RateLimiter."""

    @pytest.fixture
    def limiter(self):
        return RateLimiter()

    def test_default_windows(self):
        assert RATE_LIMITS["process.create"] == {"max_actions": 10, "window_seconds": 3600}
        assert RATE_LIMITS["notification.create"]["max_actions"] == 50
        assert RATE_LIMITS["event.create"]["max_actions"] == 20
        assert RATE_LIMITS["default"]["max_actions"] == 100

    def test_counts_down_then_blocks(self, limiter):
        started = time.time()
        for expected_remaining in range(9, -1, -1):
            status = limiter.check_limit("u1", "process.create")
            assert status.allowed
            assert status.remaining == expected_remaining

        blocked = limiter.check_limit("u1", "process.create")
        assert not blocked
        assert blocked.remaining == 0
        assert started + 3590 <= blocked.reset_at <= time.time() + 3600

    def test_users_are_independent(self, limiter):
        for _ in range(10):
            limiter.check_limit("u1", "process.create")

        assert limiter.check_limit("u2", "process.create").allowed

    def test_window_resets(self, limiter, mocker):
        now = time.time()
        clock = mocker.patch("time.time", return_value=now)
        for _ in range(10):
            limiter.check_limit("u1", "process.create")
        assert not limiter.get_status("u1", "process.create").allowed

        clock.return_value = now + 3601
        status = limiter.check_limit("u1", "process.create")
        assert status.allowed
        assert status.remaining == 9

    def test_prefix_lookup(self, limiter):
        assert limiter._item_for("access_gate.attempt.block-1").amount == 5
        assert limiter._item_for("something.else").amount == 100

    def test_overrides(self):
        limiter = RateLimiter({"process.create": {"max_actions": 1, "window_seconds": 60}})

        assert limiter.check_limit("u1", "process.create").allowed
        assert not limiter.check_limit("u1", "process.create").allowed
        assert limiter.limits["event.create"] == RATE_LIMITS["event.create"]

    def test_rate_string_overrides(self):
        limiter = RateLimiter({"event.create": "2/minute"})

        assert limiter.check_limit("u1", "event.create").allowed
        assert limiter.check_limit("u1", "event.create").allowed
        assert not limiter.check_limit("u1", "event.create").allowed

    def test_require_message(self, limiter):
        for _ in range(10):
            limiter.require("u1", "process.create")

        with pytest.raises(RateLimitedError) as exc_info:
            limiter.require("u1", "process.create")

        assert exc_info.value.message == "Rate limit exceeded for process.create. Try again in 60 minutes."
        assert exc_info.value.status_code == 429
        assert exc_info.value.reset_at is not None

    def test_minutes_round_up(self, limiter, mocker):
        now = time.time()
        clock = mocker.patch("time.time", return_value=now)
        for _ in range(10):
            limiter.require("u1", "process.create")
        clock.return_value = now + 3600 - 90

        with pytest.raises(RateLimitedError, match="Try again in 2 minutes"):
            limiter.require("u1", "process.create")

    def test_get_status_does_not_count(self, limiter):
        for _ in range(3):
            status = limiter.get_status("u1", "event.create")
        assert status.allowed
        assert status.remaining == 20

    def test_record_and_ensure_available(self, limiter):
        for _ in range(5):
            limiter.ensure_available("u1", "access_gate.attempt.b1")
            limiter.record("u1", "access_gate.attempt.b1")

        with pytest.raises(RateLimitedError):
            limiter.ensure_available("u1", "access_gate.attempt.b1")

    def test_reset(self, limiter):
        for _ in range(10):
            limiter.check_limit("u1", "process.create")
            limiter.check_limit("u2", "process.create")

        limiter.reset("u1")
        assert limiter.check_limit("u1", "process.create").allowed
        assert not limiter.check_limit("u2", "process.create").allowed

        limiter.reset()
        assert limiter.check_limit("u2", "process.create").allowed
