"""Per-host request budget with exponential backoff."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from urllib.parse import urlsplit

from signup_pilot.config.settings import RateLimitConfig
from signup_pilot.errors import RateLimited
from signup_pilot.utils.locks import KeyedLocks
from signup_pilot.utils.logging import get_logger

logger = get_logger("compliance.rate_limiter")


@dataclass
class RateBudget:
    """Request budget for one host in the current window."""

    window_start: float
    count: int = 0
    backoff_level: int = 0
    next_allowed_at: float = 0.0


@dataclass(frozen=True)
class RateDecision:
    """Result of a budget check."""

    allowed: bool
    wait_ms: int = 0


class RateLimiter:
    """
    Fixed-window request counter per host.

    Denials grow the wait exponentially until the backoff cap; the backoff
    level resets when the window rolls over.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            config: Rate limit settings
            clock: Monotonic clock in seconds
            sleep: Coroutine used to wait between attempts
        """
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._budgets: dict[str, RateBudget] = {}
        self._locks = KeyedLocks()

    @staticmethod
    def host_of(url: str) -> str:
        return (urlsplit(url).hostname or url).lower()

    async def check_limit(self, url: str) -> RateDecision:
        """
        Count a request against the host's budget.

        Args:
            url: URL about to be requested

        Returns:
            RateDecision; when denied, ``wait_ms`` says how long to back off
        """
        host = self.host_of(url)

        async with self._locks.hold(host):
            now = self._clock()
            budget = self._budgets.get(host)

            if budget is None or self._expired(budget, now):
                self._prune(now)
                budget = RateBudget(window_start=now)
                self._budgets[host] = budget

            if budget.count < self.config.max_requests:
                budget.count += 1
                return RateDecision(allowed=True)

            level = min(budget.backoff_level, self.config.max_backoff_level)
            wait_ms = self.config.base_delay_ms * 2 ** level
            budget.backoff_level = min(budget.backoff_level + 1, self.config.max_backoff_level)
            budget.next_allowed_at = now + wait_ms / 1000

            logger.info(
                "rate_limited",
                host=host,
                count=budget.count,
                backoff_level=budget.backoff_level,
                wait_ms=wait_ms,
            )
            return RateDecision(allowed=False, wait_ms=wait_ms)

    async def wait_if_needed(self, url: str, max_attempts: Optional[int] = None) -> None:
        """
        Block until the host's budget admits a request.

        Each denial sleeps until the later of the backoff delay and the end
        of the host's current window.

        Args:
            url: URL about to be requested
            max_attempts: Denials tolerated before giving up

        Raises:
            RateLimited: When the budget is still exhausted after max_attempts
        """
        attempts = max_attempts or self.config.max_wait_attempts
        decision = await self.check_limit(url)

        for attempt in range(1, attempts + 1):
            if decision.allowed:
                return
            delay = self.retry_delay(url, decision)
            logger.debug("rate_limit_wait", url=url, attempt=attempt, wait_ms=decision.wait_ms, delay=delay)
            await self._sleep(delay)
            decision = await self.check_limit(url)

        if not decision.allowed:
            raise RateLimited(self.host_of(url), decision.wait_ms, attempts=attempts)

    def retry_delay(self, url: str, decision: RateDecision) -> float:
        """Seconds until a denied host can next be admitted."""
        budget = self._budgets.get(self.host_of(url))
        if budget is None:
            return decision.wait_ms / 1000
        resume_at = max(budget.next_allowed_at, budget.window_start + self.config.window_seconds)
        return max(resume_at - self._clock(), 0.0)

    def _expired(self, budget: RateBudget, now: float) -> bool:
        return now - budget.window_start >= self.config.window_seconds

    def _prune(self, now: float) -> None:
        stale = [host for host, budget in self._budgets.items() if self._expired(budget, now)]
        for host in stale:
            del self._budgets[host]

    def budget_for(self, url: str) -> Optional[RateBudget]:
        """Current budget for a URL's host, if one exists."""
        return self._budgets.get(self.host_of(url))

    def reset(self, url: Optional[str] = None) -> None:
        """Forget budgets for one host, or for every host."""
        if url:
            self._budgets.pop(self.host_of(url), None)
        else:
            self._budgets.clear()
