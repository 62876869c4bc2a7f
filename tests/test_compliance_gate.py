"""Tests for the compliance gate."""

from typing import Optional

import httpx
import pytest

from conftest import StaticRobotsFetcher

from signup_pilot.audit import AuditEventType
from signup_pilot.compliance.classifier import TermsClassifier, TrustedProviderClassifier
from signup_pilot.compliance.gate import ComplianceGate, parent_explanation
from signup_pilot.compliance.robots import RobotsFetcher
from signup_pilot.compliance.verdict import ComplianceStatus
from signup_pilot.config.settings import ComplianceConfig
from signup_pilot.errors import TransportFailure


class ExplodingClassifier(TermsClassifier):
    """Classifier whose backend is down."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    @property
    def name(self) -> str:
        return "exploding"

    async def classify(self, host: str, provider_id: Optional[str] = None):
        self.calls += 1
        raise RuntimeError("classifier backend unavailable")


class TestRestrictedHosts:
    """Known restricted hosts are red without any network access."""

    async def test_restricted_host_is_red(self, gate, robots):
        verdict = await gate.evaluate("https://facebook.com/x")

        assert verdict.status is ComplianceStatus.RED
        assert verdict.confidence == 0.95
        assert verdict.reason == "Known TOS restrictions for facebook.com"
        assert robots.calls == []

    async def test_subdomain_of_restricted_host_is_red(self, gate):
        verdict = await gate.evaluate("https://m.facebook.com/groups/camp")

        assert verdict.is_red
        assert verdict.host == "m.facebook.com"

    async def test_lookalike_host_is_not_restricted(self, gate):
        verdict = await gate.evaluate("https://notfacebook.com/")

        assert verdict.status is ComplianceStatus.GREEN

    async def test_red_verdict_is_audited(self, gate, audit):
        await gate.evaluate("https://facebook.com/x")

        events = audit.of_type(AuditEventType.COMPLIANCE_RED)
        assert len(events) == 1
        assert events[0].payload["url"] == "https://facebook.com/x"
        assert events[0].payload["host"] == "facebook.com"


class TestRobotsVerdicts:
    """Verdicts derived from robots.txt."""

    async def test_disallowed_path_is_red(self, audit, clock):
        fetcher = StaticRobotsFetcher({"camp.example.org": "User-agent: *\nDisallow: /private\n"})
        gate = ComplianceGate(fetcher=fetcher, audit=audit, clock=clock)

        verdict = await gate.evaluate("https://camp.example.org/private/roster")

        assert verdict.status is ComplianceStatus.RED
        assert verdict.confidence == 0.9
        assert verdict.reason == "Disallowed by robots.txt"
        assert "Disallow: /private" in verdict.rules

    async def test_allowed_path_is_green(self, audit, clock):
        fetcher = StaticRobotsFetcher({"camp.example.org": "User-agent: *\nDisallow: /private\n"})
        gate = ComplianceGate(fetcher=fetcher, audit=audit, clock=clock)

        verdict = await gate.evaluate("https://camp.example.org/programs")

        assert verdict.status is ComplianceStatus.GREEN
        assert verdict.confidence == 0.9
        assert verdict.reason == "Allowed by robots.txt"
        assert audit.events == []

    async def test_missing_robots_is_green_with_lower_confidence(self, audit, clock):
        fetcher = StaticRobotsFetcher({"camp.example.org": None})
        gate = ComplianceGate(fetcher=fetcher, audit=audit, clock=clock)

        verdict = await gate.evaluate("https://camp.example.org/")

        assert verdict.status is ComplianceStatus.GREEN
        assert verdict.confidence == 0.7
        assert verdict.reason == "No robots.txt found"
        assert verdict.rules == ("No robots.txt found",)

    async def test_fetch_error_is_red_and_not_cached(self, audit, clock):
        fetcher = StaticRobotsFetcher({"camp.example.org": TransportFailure("robots", "timed out")})
        gate = ComplianceGate(fetcher=fetcher, audit=audit, clock=clock)

        first = await gate.evaluate("https://camp.example.org/")
        second = await gate.evaluate("https://camp.example.org/")

        assert first.status is ComplianceStatus.RED
        assert first.confidence == 0.2
        assert first.reason == "Error checking robots.txt"
        assert not second.from_cache
        assert fetcher.calls == ["camp.example.org", "camp.example.org"]

    async def test_unparseable_url_is_red(self, gate):
        verdict = await gate.evaluate("not a url")

        assert verdict.is_red
        assert verdict.confidence == 0.2
        assert verdict.host == ""


class TestVerdictCache:
    """Per-host caching with a TTL."""

    async def test_second_evaluation_is_served_from_cache(self, gate, robots):
        first = await gate.evaluate("https://camp.example.org/a")
        second = await gate.evaluate("https://camp.example.org/b")

        assert not first.from_cache
        assert second.from_cache
        assert second.path == "/b"
        assert robots.calls == ["camp.example.org"]

    async def test_cache_expires_after_ttl(self, gate, robots, clock):
        await gate.evaluate("https://camp.example.org/")
        clock.advance(3599)
        await gate.evaluate("https://camp.example.org/")
        clock.advance(2)
        verdict = await gate.evaluate("https://camp.example.org/")

        assert not verdict.from_cache
        assert len(robots.calls) == 2

    async def test_missing_robots_uses_shorter_ttl(self, audit, clock):
        fetcher = StaticRobotsFetcher({"camp.example.org": None})
        gate = ComplianceGate(config=ComplianceConfig(cache_ttl_seconds=3600), fetcher=fetcher, clock=clock)

        await gate.evaluate("https://camp.example.org/")
        clock.advance(899)
        assert (await gate.evaluate("https://camp.example.org/")).from_cache
        clock.advance(2)
        assert not (await gate.evaluate("https://camp.example.org/")).from_cache
        assert len(fetcher.calls) == 2

    async def test_clear_cache_forces_refetch(self, gate, robots):
        await gate.evaluate("https://camp.example.org/")
        gate.clear_cache("camp.example.org")
        await gate.evaluate("https://camp.example.org/")

        assert len(robots.calls) == 2

    async def test_cache_status_lists_hosts(self, gate):
        await gate.evaluate("https://facebook.com/")
        await gate.evaluate("https://camp.example.org/")

        status = gate.cache_status()

        assert status["facebook.com"]["restricted"] is True
        assert status["camp.example.org"]["restricted"] is False
        assert status["camp.example.org"]["expires_in_seconds"] == 3600.0


class TestDeeperClassification:
    """Terms classification layered on top of robots rules."""

    async def test_trusted_provider_stays_green(self, audit, clock):
        gate = ComplianceGate(
            fetcher=StaticRobotsFetcher(),
            classifier=TrustedProviderClassifier(),
            audit=audit,
            clock=clock,
        )

        verdict = await gate.evaluate("https://app.jackrabbitclass.com/regv2.asp?id=123")

        assert verdict.status is ComplianceStatus.GREEN
        assert verdict.details["robots_reason"] == "Allowed by robots.txt"
        assert audit.events == []

    async def test_unknown_provider_needs_review(self, audit, clock):
        gate = ComplianceGate(
            fetcher=StaticRobotsFetcher(),
            classifier=TrustedProviderClassifier(),
            audit=audit,
            clock=clock,
        )

        verdict = await gate.evaluate("https://tinycamp.example.org/")

        assert verdict.status is ComplianceStatus.YELLOW
        assert verdict.details["review_required"] is True
        assert verdict.details["classifier_failed"] is False
        assert len(audit.of_type(AuditEventType.COMPLIANCE_REVIEW_REQUIRED)) == 1

    async def test_blocked_provider_overrides_robots_green(self, audit, clock):
        fetcher = StaticRobotsFetcher({"www.nope-camps.com": "User-agent: *\nAllow: /\n"})
        gate = ComplianceGate(
            fetcher=fetcher,
            classifier=TrustedProviderClassifier(blocked=("nope-camps.com",)),
            audit=audit,
            clock=clock,
        )

        verdict = await gate.evaluate("https://www.nope-camps.com/summer")

        assert verdict.status is ComplianceStatus.RED
        assert verdict.reason == "Provider has requested no automated access"
        assert verdict.details["robots_reason"] == "Allowed by robots.txt"
        assert fetcher.calls == ["www.nope-camps.com"]
        assert len(audit.of_type(AuditEventType.COMPLIANCE_RED)) == 1

    async def test_classifier_failure_is_yellow_not_green(self, audit, clock):
        classifier = ExplodingClassifier()
        gate = ComplianceGate(fetcher=StaticRobotsFetcher(), classifier=classifier, audit=audit, clock=clock)

        verdict = await gate.evaluate("https://camp.example.org/")

        assert verdict.status is ComplianceStatus.YELLOW
        assert verdict.confidence == 0.3
        assert verdict.details["classifier_failed"] is True
        assert len(audit.of_type(AuditEventType.COMPLIANCE_YELLOW)) == 1

    async def test_classifier_failure_is_retried_after_short_ttl(self, clock):
        classifier = ExplodingClassifier()
        gate = ComplianceGate(
            config=ComplianceConfig(classifier_failure_ttl_seconds=300),
            fetcher=StaticRobotsFetcher(),
            classifier=classifier,
            clock=clock,
        )

        await gate.evaluate("https://camp.example.org/")
        await gate.evaluate("https://camp.example.org/")
        assert classifier.calls == 1

        clock.advance(301)
        await gate.evaluate("https://camp.example.org/")
        assert classifier.calls == 2

    async def test_robots_red_skips_classifier(self, clock):
        classifier = ExplodingClassifier()
        fetcher = StaticRobotsFetcher({"camp.example.org": "User-agent: *\nDisallow: /\n"})
        gate = ComplianceGate(fetcher=fetcher, classifier=classifier, clock=clock)

        verdict = await gate.evaluate("https://camp.example.org/")

        assert verdict.reason == "Disallowed by robots.txt"
        assert classifier.calls == 0


class TestParentExplanation:
    """Consumer-facing explanations."""

    async def test_explanations_by_status(self, gate):
        red = await gate.evaluate("https://facebook.com/")
        green = await gate.evaluate("https://camp.example.org/")

        assert "register manually" in parent_explanation(red, "Facebook")
        assert parent_explanation(green, "Camp").startswith("Camp is a trusted camp provider")


class TestRobotsFetcher:
    """HTTP behavior of the robots fetcher."""

    def _fetcher(self, handler) -> RobotsFetcher:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return RobotsFetcher("CampScheduleBot/1.0", client=client)

    async def test_returns_content_on_200(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["agent"] = request.headers["User-Agent"]
            return httpx.Response(200, text="User-agent: *\nDisallow: /admin\n")

        content = await self._fetcher(handler).fetch("camp.example.org")

        assert "Disallow: /admin" in content
        assert seen["url"] == "https://camp.example.org/robots.txt"
        assert seen["agent"] == "CampScheduleBot/1.0"

    async def test_client_error_means_missing(self):
        content = await self._fetcher(lambda request: httpx.Response(404)).fetch("camp.example.org")

        assert content is None

    async def test_server_error_raises(self):
        with pytest.raises(TransportFailure) as exc_info:
            await self._fetcher(lambda request: httpx.Response(503)).fetch("camp.example.org")

        assert exc_info.value.status_code == 503

    async def test_network_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportFailure):
            await self._fetcher(handler).fetch("camp.example.org")
