"""Compliance gate: decides whether automated access to a URL is permitted."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

from signup_pilot.audit import AuditEventType, AuditLog
from signup_pilot.compliance.classifier import ClassifierResult, TermsClassifier
from signup_pilot.compliance.robots import RobotsFetcher, RobotsRules, parse_robots
from signup_pilot.compliance.verdict import ComplianceStatus, Verdict
from signup_pilot.config.settings import ComplianceConfig
from signup_pilot.errors import TransportFailure
from signup_pilot.utils.locks import KeyedLocks
from signup_pilot.utils.logging import get_logger

logger = get_logger("compliance.gate")


@dataclass
class _HostEntry:
    """Cached per-host state. Verdicts are derived per path from it."""

    expires_at: float
    rules: RobotsRules
    restricted_reason: Optional[str] = None
    classification: Optional[ClassifierResult] = None
    classification_expires_at: float = 0.0
    classification_failed: bool = False


class ComplianceGate:
    """
    Rules engine consulted before every session creation and navigation.

    Per-host state (robots rules, restricted-host decision, deeper
    classification) is cached with a TTL and guarded by a per-host lock so
    that concurrent attempts against different hosts never serialize.
    """

    def __init__(
        self,
        config: Optional[ComplianceConfig] = None,
        fetcher: Optional[RobotsFetcher] = None,
        classifier: Optional[TermsClassifier] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the gate.

        Args:
            config: Compliance settings
            fetcher: Robots fetcher (built from config if omitted)
            classifier: Optional deeper terms-of-service classifier
            audit: Audit log for yellow/red verdicts
            clock: Monotonic clock in seconds
        """
        self.config = config or ComplianceConfig()
        self.fetcher = fetcher or RobotsFetcher(
            user_agent=self.config.user_agent,
            timeout=self.config.robots_timeout_seconds,
        )
        self.classifier = classifier
        self.audit = audit
        self._clock = clock
        self._cache: dict[str, _HostEntry] = {}
        self._locks = KeyedLocks()

    async def evaluate(self, url: str, provider_id: Optional[str] = None) -> Verdict:
        """
        Evaluate whether automated access to a URL is permitted.

        Args:
            url: Target URL
            provider_id: Optional known provider identifier

        Returns:
            Verdict for the URL's host and path
        """
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        path = parts.path or "/"

        if not host:
            verdict = Verdict(
                status=ComplianceStatus.RED,
                confidence=0.2,
                reason=f"Unable to parse URL: {url}",
                host="",
                path=path,
            )
            await self._audit_verdict(url, verdict)
            return verdict

        async with self._locks.hold(host):
            verdict = await self._evaluate_locked(host, path, provider_id)

        await self._audit_verdict(url, verdict)
        return verdict

    async def _evaluate_locked(
        self,
        host: str,
        path: str,
        provider_id: Optional[str],
    ) -> Verdict:
        now = self._clock()
        entry = self._cache.get(host)
        from_cache = entry is not None and entry.expires_at > now

        if not from_cache:
            restricted = self._restricted_reason(host)
            if restricted:
                entry = _HostEntry(
                    expires_at=now + self.config.cache_ttl_seconds,
                    rules=RobotsRules(path_rules=[], found=False),
                    restricted_reason=restricted,
                )
            else:
                try:
                    entry = await self._load_rules(host, now)
                except (TransportFailure, ValueError, UnicodeError) as e:
                    # Never cached: the next evaluation retries the fetch
                    logger.warning("robots_check_failed", host=host, error=str(e))
                    return Verdict(
                        status=ComplianceStatus.RED,
                        confidence=0.2,
                        reason="Error checking robots.txt",
                        host=host,
                        path=path,
                        details={"error": str(e)},
                    )
            self._cache[host] = entry
            logger.debug("verdict_cached", host=host, ttl=entry.expires_at - now)

        base = self._base_verdict(host, path, entry)
        if base.is_red or self.classifier is None:
            return base.cached() if from_cache else base

        if entry.classification is None or entry.classification_expires_at <= now:
            await self._classify(host, provider_id, entry, now)

        verdict = self._combine(base, entry)
        return verdict.cached() if from_cache else verdict

    def _restricted_reason(self, host: str) -> Optional[str]:
        for restricted in self.config.restricted_hosts:
            if host == restricted or host.endswith("." + restricted):
                return f"Known TOS restrictions for {restricted}"
        return None

    async def _load_rules(self, host: str, now: float) -> _HostEntry:
        content = await self.fetcher.fetch(host)
        if content is None:
            # Rules may appear later; keep the entry short-lived
            return _HostEntry(
                expires_at=now + self.config.missing_robots_ttl_seconds,
                rules=RobotsRules(path_rules=[], found=False),
            )

        return _HostEntry(
            expires_at=now + self.config.cache_ttl_seconds,
            rules=parse_robots(content, self.config.user_agent),
        )

    def _base_verdict(self, host: str, path: str, entry: _HostEntry) -> Verdict:
        if entry.restricted_reason:
            return Verdict(
                status=ComplianceStatus.RED,
                confidence=0.95,
                reason=entry.restricted_reason,
                host=host,
                path=path,
            )

        rules = entry.rules.summary()
        if not entry.rules.is_allowed(path):
            return Verdict(
                status=ComplianceStatus.RED,
                confidence=0.9,
                reason="Disallowed by robots.txt",
                host=host,
                path=path,
                rules=rules,
            )

        return Verdict(
            status=ComplianceStatus.GREEN,
            confidence=0.9 if entry.rules.found else 0.7,
            reason="Allowed by robots.txt" if entry.rules.found else "No robots.txt found",
            host=host,
            path=path,
            rules=rules,
        )

    async def _classify(
        self,
        host: str,
        provider_id: Optional[str],
        entry: _HostEntry,
        now: float,
    ) -> None:
        try:
            entry.classification = await self.classifier.classify(host, provider_id)
            entry.classification_failed = False
            entry.classification_expires_at = entry.expires_at
        except Exception as e:
            # A failed deeper check requires review; it is never silently green
            logger.warning(
                "classifier_failed",
                host=host,
                classifier=self.classifier.name,
                error=str(e),
            )
            entry.classification = ClassifierResult(
                status=ComplianceStatus.YELLOW,
                confidence=0.3,
                reason=f"Terms check unavailable - parent review required ({type(e).__name__})",
            )
            entry.classification_failed = True
            entry.classification_expires_at = now + self.config.classifier_failure_ttl_seconds

    def _combine(self, base: Verdict, entry: _HostEntry) -> Verdict:
        deeper = entry.classification
        details: dict[str, Any] = {"robots_reason": base.reason}

        if deeper.status is ComplianceStatus.RED:
            return Verdict(
                status=ComplianceStatus.RED,
                confidence=deeper.confidence,
                reason=deeper.reason,
                host=base.host,
                path=base.path,
                rules=base.rules,
                provider_type=deeper.provider_type,
                details=details,
            )

        if deeper.status is ComplianceStatus.YELLOW:
            details["review_required"] = True
            details["classifier_failed"] = entry.classification_failed
            return Verdict(
                status=ComplianceStatus.YELLOW,
                confidence=deeper.confidence,
                reason=deeper.reason,
                host=base.host,
                path=base.path,
                rules=base.rules,
                provider_type=deeper.provider_type,
                details=details,
            )

        return Verdict(
            status=ComplianceStatus.GREEN,
            confidence=min(base.confidence, deeper.confidence),
            reason=deeper.reason,
            host=base.host,
            path=base.path,
            rules=base.rules,
            provider_type=deeper.provider_type,
            details=details,
        )

    async def _audit_verdict(self, url: str, verdict: Verdict) -> None:
        if self.audit is None or verdict.status is ComplianceStatus.GREEN:
            return

        if verdict.is_red:
            event_type = AuditEventType.COMPLIANCE_RED
        elif verdict.details.get("review_required") and not verdict.details.get("classifier_failed"):
            event_type = AuditEventType.COMPLIANCE_REVIEW_REQUIRED
        else:
            event_type = AuditEventType.COMPLIANCE_YELLOW

        await self.audit.record(event_type, {"url": url, **verdict.to_dict()})

    def clear_cache(self, host: Optional[str] = None) -> None:
        """Drop cached state for one host, or for every host."""
        if host:
            self._cache.pop(host.lower(), None)
        else:
            self._cache.clear()
        logger.info("compliance_cache_cleared", host=host or "*")

    def cache_status(self) -> dict[str, dict[str, Any]]:
        """Snapshot of cached hosts for operators."""
        now = self._clock()
        status = {}
        for host, entry in self._cache.items():
            status[host] = {
                "restricted": entry.restricted_reason is not None,
                "rules": list(entry.rules.summary()),
                "expires_in_seconds": round(max(0.0, entry.expires_at - now), 1),
                "classification": (
                    entry.classification.status.value if entry.classification else None
                ),
            }
        return status


def parent_explanation(verdict: Verdict, provider_name: str) -> str:
    """Human-readable explanation of a verdict for the consumer."""
    if verdict.status is ComplianceStatus.GREEN:
        return (
            f"{provider_name} is a trusted camp provider. "
            "We'll help you register with your explicit consent."
        )
    if verdict.status is ComplianceStatus.YELLOW:
        return (
            f"We'll help you register at {provider_name} with your explicit consent. "
            "You maintain full control of the process."
        )
    return (
        f"{provider_name} has requested that we not provide automated assistance. "
        "You'll need to register manually."
    )
