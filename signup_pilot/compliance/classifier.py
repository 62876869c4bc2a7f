"""Deeper terms-of-service classifiers consulted by the compliance gate."""

from __future__ import annotations

import json
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from signup_pilot.compliance.verdict import ComplianceStatus
from signup_pilot.utils.logging import get_logger

logger = get_logger("compliance.classifier")


# Camp management platforms and public programs that accept registrations
TRUSTED_PROVIDERS = (
    "active.com",
    "campwise.com",
    "campminder.com",
    "daysmart.com",
    "jackrabbit.com",
    "jackrabbitclass.com",
    "sawyer.com",
    "campbrain.com",
    "ultracamp.com",
    "communitypass.net",
    "playmetrics.com",
    "trakstar.com",
    "perfectmind.com",
    "recdesk.com",
    "ymca.org",
    "ymca.net",
    "jcc.org",
    "jewishcc.org",
    "parks.ca.gov",
    "nycgovparks.org",
    "chicago.gov",
    "recreation.gov",
    "summercamps.com",
    "mysummercamps.com",
    "camppage.com",
)

# Providers that have explicitly asked not to be automated
BLOCKED_PROVIDERS: tuple[str, ...] = ()

RESTRICTIVE_TERMS_PATTERNS = (
    re.compile(r"automated.*prohibited", re.IGNORECASE),
    re.compile(r"bots?.*not.*allowed", re.IGNORECASE),
    re.compile(r"scraping.*forbidden", re.IGNORECASE),
    re.compile(r"automated.*access.*prohibited", re.IGNORECASE),
    re.compile(r"mechanical.*harvesting", re.IGNORECASE),
    re.compile(r"systematic.*retrieval", re.IGNORECASE),
)

TERMS_PATHS = ("/terms", "/terms-of-service", "/terms-of-use", "/tos", "/legal")


@dataclass(frozen=True)
class ClassifierResult:
    """Outcome of a deeper terms check."""

    status: ComplianceStatus
    confidence: float
    reason: str
    provider_type: str = "unknown"


def registrable_domain(host: str) -> str:
    """Main domain of a host (``register.active.com`` -> ``active.com``)."""
    parts = host.lower().split(".")
    if len(parts) >= 2:
        return ".".join(parts[-2:])
    return host.lower()


def _host_matches(host: str, domains: tuple[str, ...]) -> bool:
    host = host.lower()
    return any(host == d or host.endswith("." + d) for d in domains)


def identify_provider_type(host: str) -> str:
    """Coarse provider category used in explanations and audit events."""
    domain = host.lower()
    if "ymca" in domain:
        return "ymca"
    if "active" in domain:
        return "active_network"
    if "camp" in domain:
        return "camp_provider"
    if "parks" in domain or "recreation" in domain:
        return "parks_recreation"
    if "gov" in domain:
        return "government"
    return "unknown"


class TermsClassifier(ABC):
    """Base class for deeper terms-of-service checks."""

    def __init__(self) -> None:
        self.logger = get_logger(f"compliance.classifier.{self.name}")

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this classifier."""
        ...

    @abstractmethod
    async def classify(self, host: str, provider_id: Optional[str] = None) -> ClassifierResult:
        """
        Classify a host.

        Args:
            host: Hostname being accessed
            provider_id: Optional known provider identifier

        Returns:
            ClassifierResult for the host
        """
        ...


class TrustedProviderClassifier(TermsClassifier):
    """Static allow/deny lists of known registration providers."""

    def __init__(
        self,
        trusted: tuple[str, ...] = TRUSTED_PROVIDERS,
        blocked: tuple[str, ...] = BLOCKED_PROVIDERS,
    ) -> None:
        super().__init__()
        self.trusted = trusted
        self.blocked = blocked

    @property
    def name(self) -> str:
        return "trusted_list"

    async def classify(self, host: str, provider_id: Optional[str] = None) -> ClassifierResult:
        provider_type = identify_provider_type(registrable_domain(host))

        if _host_matches(host, self.trusted):
            return ClassifierResult(
                status=ComplianceStatus.GREEN,
                confidence=0.9,
                reason="Trusted camp provider - proceed with registration",
                provider_type=provider_type,
            )

        if _host_matches(host, self.blocked):
            return ClassifierResult(
                status=ComplianceStatus.RED,
                confidence=0.9,
                reason="Provider has requested no automated access",
                provider_type=provider_type,
            )

        return ClassifierResult(
            status=ComplianceStatus.YELLOW,
            confidence=0.6,
            reason="Unknown provider - proceeding with explicit parent consent",
            provider_type=provider_type,
        )


CLASSIFIER_SYSTEM_PROMPT = """You review website terms of service for a parent-authorized
registration assistant. Decide whether automated, parent-approved registration on this
site is permitted (green), unclear and needs human review (yellow), or prohibited (red).
Respond with a single JSON object: {"status": "green|yellow|red", "confidence": 0.0-1.0,
"reason": "one sentence"}."""


class AnthropicTermsClassifier(TermsClassifier):
    """
    Reads a host's terms page and asks Claude for a verdict.

    Explicit prohibition language found in the page short-circuits to red
    without a model call.
    """

    MAX_TERMS_CHARS = 12000

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-5",
        user_agent: str = "CampScheduleBot/1.0",
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the classifier.

        Args:
            api_key: Anthropic API key
            model: Claude model to use
            user_agent: User-Agent for fetching terms pages
            http_client: Shared HTTP client for terms pages
        """
        super().__init__()
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        self.model = model
        self.user_agent = user_agent
        self._http_client = http_client
        self._client = None

    @property
    def name(self) -> str:
        return "anthropic"

    async def _get_client(self):
        """Get or create Anthropic client."""
        if self._client is None:
            import anthropic

            if not self.api_key:
                raise ValueError("ANTHROPIC_API_KEY not set")

            self._client = anthropic.AsyncAnthropic(api_key=self.api_key)

        return self._client

    async def classify(self, host: str, provider_id: Optional[str] = None) -> ClassifierResult:
        provider_type = identify_provider_type(registrable_domain(host))
        terms_text = await self._fetch_terms(host)

        if terms_text is None:
            return ClassifierResult(
                status=ComplianceStatus.YELLOW,
                confidence=0.4,
                reason="No terms of service page found - parent review required",
                provider_type=provider_type,
            )

        for pattern in RESTRICTIVE_TERMS_PATTERNS:
            match = pattern.search(terms_text)
            if match:
                return ClassifierResult(
                    status=ComplianceStatus.RED,
                    confidence=0.8,
                    reason=f"Terms restrict automation: '{match.group(0)[:80]}'",
                    provider_type=provider_type,
                )

        client = await self._get_client()
        response = await client.messages.create(
            model=self.model,
            max_tokens=300,
            system=CLASSIFIER_SYSTEM_PROMPT,
            messages=[{
                "role": "user",
                "content": f"Host: {host}\n\nTerms of service:\n{terms_text[:self.MAX_TERMS_CHARS]}",
            }],
        )

        parsed = self._parse_json_response(response.content[0].text)
        status = ComplianceStatus(parsed["status"])
        return ClassifierResult(
            status=status,
            confidence=float(parsed.get("confidence", 0.5)),
            reason=str(parsed.get("reason", "Terms reviewed by model")),
            provider_type=provider_type,
        )

    async def _fetch_terms(self, host: str) -> Optional[str]:
        """Fetch the first reachable terms page as plain text."""
        from bs4 import BeautifulSoup

        headers = {"User-Agent": self.user_agent}

        async def _get(client: httpx.AsyncClient, url: str) -> Optional[str]:
            response = await client.get(url, headers=headers, timeout=10.0)
            if response.status_code != 200:
                return None
            return response.text

        for path in TERMS_PATHS:
            url = f"https://{host}{path}"
            if self._http_client is not None:
                html = await _get(self._http_client, url)
            else:
                async with httpx.AsyncClient(follow_redirects=True) as client:
                    html = await _get(client, url)

            if html:
                soup = BeautifulSoup(html, "lxml")
                text = " ".join(soup.get_text(" ").split())
                self.logger.debug("terms_page_found", host=host, path=path, chars=len(text))
                return text

        return None

    def _parse_json_response(self, content: str) -> dict:
        """
        Parse the JSON verdict from Claude's response.

        Raises:
            ValueError: If no valid verdict can be parsed
        """
        json_match = re.search(r"\{.*\}", content, re.DOTALL)
        if not json_match:
            raise ValueError(f"No JSON in classifier response: {content[:200]}")

        data = json.loads(json_match.group(0))
        if data.get("status") not in {s.value for s in ComplianceStatus}:
            raise ValueError(f"Invalid classifier status: {data.get('status')!r}")
        return data


# Classifier registry mapping config names to classes
CLASSIFIER_REGISTRY: dict[str, type[TermsClassifier]] = {
    "trusted_list": TrustedProviderClassifier,
    "anthropic": AnthropicTermsClassifier,
}


def get_classifier(name: str, **kwargs) -> Optional[TermsClassifier]:
    """
    Factory function to get a classifier by name.

    Args:
        name: Classifier name, or ``none`` to disable the deeper check
        **kwargs: Passed to the classifier constructor

    Returns:
        Configured TermsClassifier, or None when disabled

    Raises:
        ValueError: If name is not registered
    """
    if name == "none":
        return None

    if name not in CLASSIFIER_REGISTRY:
        available = ", ".join(["none", *CLASSIFIER_REGISTRY.keys()])
        raise ValueError(f"Unknown classifier: {name}. Available: {available}")

    return CLASSIFIER_REGISTRY[name](**kwargs)
