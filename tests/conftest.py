"""Shared fixtures and fakes for signup-pilot tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import pytest

from signup_pilot.audit import MemoryAuditLog
from signup_pilot.browser.client import BrowserProvider
from signup_pilot.browser.models import PageData
from signup_pilot.compliance.gate import ComplianceGate
from signup_pilot.compliance.robots import RobotsFetcher
from signup_pilot.config.settings import ComplianceConfig, SessionConfig
from signup_pilot.errors import TransportFailure
from signup_pilot.workflow.barriers import BarrierExecutor
from signup_pilot.workflow.notifications import HumanNotifier, InterventionRequest


class FakeClock:
    """Monotonic clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWallClock:
    """Timezone-aware clock for session timestamps."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class StaticRobotsFetcher(RobotsFetcher):
    """
    Serves robots.txt content from a dict instead of the network.

    A host mapped to None has no robots.txt; a host mapped to an exception
    raises it. Unknown hosts allow everything.
    """

    def __init__(self, robots: Optional[dict[str, Union[str, None, Exception]]] = None) -> None:
        super().__init__(user_agent="CampScheduleBot/1.0")
        self.robots = robots or {}
        self.calls: list[str] = []

    async def fetch(self, host: str) -> Optional[str]:
        self.calls.append(host)
        content = self.robots.get(host, "User-agent: *\nAllow: /\n")
        if isinstance(content, Exception):
            raise content
        return content


class FakeBrowserProvider(BrowserProvider):
    """
    In-memory browser provider.

    Every call is recorded in ``calls``. Navigation returns the page
    registered for a URL; interactions and extracts return queued pages
    (or the current page when the queue is empty).
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.pages: dict[str, PageData] = {}
        self.interact_pages: list[PageData] = []
        self.extract_pages: list[PageData] = []
        self.failures: dict[str, int] = {}
        self.closed: list[str] = []
        self.current: dict[str, PageData] = {}
        self._next_id = 0

    def fail(self, method: str, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` raise TransportFailure."""
        self.failures[method] = times

    def _maybe_fail(self, method: str) -> None:
        remaining = self.failures.get(method, 0)
        if remaining > 0:
            self.failures[method] = remaining - 1
            raise TransportFailure("browser", f"{method} failed")

    async def create(self, url: Optional[str] = None) -> str:
        self.calls.append(("create", url))
        self._maybe_fail("create")
        self._next_id += 1
        session_id = f"sess-{self._next_id}"
        self.current[session_id] = self.pages.get(url or "", PageData(url=url or ""))
        return session_id

    async def navigate(self, session_id: str, url: str) -> PageData:
        self.calls.append(("navigate", session_id, url))
        self._maybe_fail("navigate")
        page = self.pages.get(url, PageData(url=url))
        self.current[session_id] = page
        return page

    async def interact(self, session_id: str, steps: list[dict[str, Any]]) -> PageData:
        self.calls.append(("interact", session_id, steps))
        self._maybe_fail("interact")
        if self.interact_pages:
            self.current[session_id] = self.interact_pages.pop(0)
        return self.current.get(session_id, PageData())

    async def extract(
        self,
        session_id: str,
        selector: Optional[str] = None,
        wait_for: Optional[str] = None,
    ) -> PageData:
        self.calls.append(("extract", session_id, selector))
        self._maybe_fail("extract")
        if self.extract_pages:
            return self.extract_pages.pop(0)
        return self.current.get(session_id, PageData())

    async def close(self, session_id: str) -> None:
        self.calls.append(("close", session_id))
        self._maybe_fail("close")
        self.closed.append(session_id)

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]


class RecordingNotifier(HumanNotifier):
    """Keeps every intervention request."""

    def __init__(self, delivered: bool = True) -> None:
        self.requests: list[InterventionRequest] = []
        self.delivered = delivered

    async def notify(self, request: InterventionRequest) -> bool:
        self.requests.append(request)
        return self.delivered


class ScriptedExecutor(BarrierExecutor):
    """
    Records executed barriers; raises a scripted exception for a barrier.

    Each scripted exception fires once, so a retried barrier passes.
    """

    def __init__(self, errors: Optional[dict[str, Exception]] = None) -> None:
        self.errors = dict(errors or {})
        self.executed: list[tuple[str, str]] = []
        self.hooks: list[tuple[str, str]] = []

    async def execute(self, state, stage, barrier) -> None:
        self.executed.append((stage.id, barrier))
        error = self.errors.pop(barrier, None)
        if error is not None:
            raise error

    async def on_pause(self, attempt_id: str) -> None:
        self.hooks.append(("pause", attempt_id))

    async def on_resume(self, attempt_id: str) -> None:
        self.hooks.append(("resume", attempt_id))

    async def on_finish(self, attempt_id: str) -> None:
        self.hooks.append(("finish", attempt_id))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def wall_clock():
    return FakeWallClock()


@pytest.fixture
def audit():
    return MemoryAuditLog()


@pytest.fixture
def robots():
    return StaticRobotsFetcher()


@pytest.fixture
def gate(robots, audit, clock):
    """Gate with the default restricted hosts and no deeper classifier."""
    return ComplianceGate(
        config=ComplianceConfig(),
        fetcher=robots,
        classifier=None,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def browser():
    return FakeBrowserProvider()


@pytest.fixture
def session_config():
    return SessionConfig(
        max_duration_seconds=300,
        max_idle_seconds=60,
        max_error_count=3,
        cleanup_interval_seconds=30,
        action_timeout_seconds=5,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()
