"""Tests for the per-host rate limiter."""

import pytest

from conftest import FakeClock

from signup_pilot.compliance.rate_limiter import RateLimiter
from signup_pilot.config.settings import RateLimitConfig
from signup_pilot.errors import RateLimited


class TestCheckLimit:
    """Fixed window counting and backoff."""

    def setup_method(self):
        self.clock = FakeClock()
        self.limiter = RateLimiter(
            RateLimitConfig(window_seconds=60, max_requests=10, base_delay_ms=1000, max_backoff_level=3),
            clock=self.clock,
        )

    async def test_eleventh_request_in_window_is_denied(self):
        decisions = [await self.limiter.check_limit("https://camp.example.org/p") for _ in range(11)]

        assert all(d.allowed for d in decisions[:10])
        assert not decisions[10].allowed
        assert decisions[10].wait_ms == 1000

    async def test_repeated_denials_back_off_exponentially(self):
        for _ in range(10):
            await self.limiter.check_limit("https://camp.example.org/")

        waits = [(await self.limiter.check_limit("https://camp.example.org/")).wait_ms for _ in range(5)]

        assert waits == [1000, 2000, 4000, 8000, 8000]

    async def test_hosts_have_independent_budgets(self):
        for _ in range(10):
            await self.limiter.check_limit("https://camp.example.org/")

        decision = await self.limiter.check_limit("https://other.example.org/")

        assert decision.allowed

    async def test_window_rollover_resets_count_and_backoff(self):
        for _ in range(12):
            await self.limiter.check_limit("https://camp.example.org/")

        self.clock.advance(60)
        decision = await self.limiter.check_limit("https://camp.example.org/")
        budget = self.limiter.budget_for("https://camp.example.org/")

        assert decision.allowed
        assert budget.count == 1
        assert budget.backoff_level == 0

    async def test_reset_forgets_host(self):
        for _ in range(10):
            await self.limiter.check_limit("https://camp.example.org/")

        self.limiter.reset("https://camp.example.org/")

        assert self.limiter.budget_for("https://camp.example.org/") is None
        assert (await self.limiter.check_limit("https://camp.example.org/")).allowed


class TestWaitIfNeeded:
    """Blocking until the budget admits a request."""

    def setup_method(self):
        self.clock = FakeClock()
        self.sleeps = []

        async def sleep(seconds):
            self.sleeps.append(seconds)
            self.clock.advance(seconds)

        self.limiter = RateLimiter(
            RateLimitConfig(window_seconds=2, max_requests=1, base_delay_ms=1000, max_wait_attempts=3),
            clock=self.clock,
            sleep=sleep,
        )

    async def test_returns_immediately_with_budget(self):
        await self.limiter.wait_if_needed("https://camp.example.org/")

        assert self.sleeps == []

    async def test_waits_for_window_to_roll_over(self):
        await self.limiter.wait_if_needed("https://camp.example.org/")
        await self.limiter.wait_if_needed("https://camp.example.org/")

        assert self.sleeps == [2.0]

    async def test_gives_up_after_max_attempts(self):
        async def no_sleep(seconds):
            self.sleeps.append(seconds)

        limiter = RateLimiter(
            RateLimitConfig(window_seconds=60, max_requests=1, base_delay_ms=100, max_wait_attempts=3),
            clock=self.clock,
            sleep=no_sleep,
        )
        await limiter.wait_if_needed("https://camp.example.org/")

        with pytest.raises(RateLimited) as exc_info:
            await limiter.wait_if_needed("https://camp.example.org/")

        assert exc_info.value.host == "camp.example.org"
        assert len(self.sleeps) == 3

    async def test_default_budget_recovers_after_window(self):
        limiter = RateLimiter(RateLimitConfig(), clock=self.clock, sleep=self._advancing_sleep)
        for _ in range(10):
            await limiter.check_limit("https://camp.example.org/")

        await limiter.wait_if_needed("https://camp.example.org/")

        assert self.sleeps == [60.0]
        assert limiter.budget_for("https://camp.example.org/").count == 1

    async def test_waits_out_backoff_longer_than_window(self):
        limiter = RateLimiter(
            RateLimitConfig(window_seconds=1, max_requests=1, base_delay_ms=5000),
            clock=self.clock,
            sleep=self._advancing_sleep,
        )
        await limiter.wait_if_needed("https://camp.example.org/")

        await limiter.wait_if_needed("https://camp.example.org/")

        assert self.sleeps == [5.0]

    async def _advancing_sleep(self, seconds):
        self.sleeps.append(seconds)
        self.clock.advance(seconds)


class TestBudgetEviction:
    """Spent budgets of quiet hosts are forgotten."""

    async def test_expired_budgets_are_pruned(self):
        clock = FakeClock()
        limiter = RateLimiter(RateLimitConfig(window_seconds=60), clock=clock)
        await limiter.check_limit("https://camp.example.org/")

        clock.advance(61)
        await limiter.check_limit("https://other.example.org/")

        assert limiter.budget_for("https://camp.example.org/") is None
        assert limiter.budget_for("https://other.example.org/").count == 1
