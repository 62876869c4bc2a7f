"""Robots rules fetching and evaluation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

import httpx

from signup_pilot.errors import TransportFailure
from signup_pilot.utils.logging import get_logger

logger = get_logger("compliance.robots")


@dataclass(frozen=True)
class PathRule:
    """A single Allow or Disallow line from a relevant group."""

    allow: bool
    pattern: str

    def matches(self, path: str) -> bool:
        if not self.pattern:
            return False
        return _pattern_regex(self.pattern).match(path) is not None

    def __str__(self) -> str:
        return f"{'Allow' if self.allow else 'Disallow'}: {self.pattern}"


@dataclass
class RobotsRules:
    """
    Rules that apply to our user agent on one host.

    Only groups whose User-agent is ``*``, equals our agent, or contains
    ``bot`` are kept; their rules are merged.
    """

    path_rules: list[PathRule] = field(default_factory=list)
    crawl_delay: Optional[float] = None
    found: bool = True

    @property
    def blanket_disallow(self) -> bool:
        """True when a relevant group disallows the whole site."""
        return any(not r.allow and r.pattern == "/" for r in self.path_rules)

    def is_allowed(self, path: str) -> bool:
        """
        Decide whether a path may be fetched.

        A blanket ``Disallow: /`` wins over everything. Otherwise the
        longest matching pattern decides, with ties going to Allow.
        """
        if self.blanket_disallow:
            return False

        best: Optional[PathRule] = None
        for rule in self.path_rules:
            if not rule.matches(path):
                continue
            if best is None or len(rule.pattern) > len(best.pattern):
                best = rule
            elif len(rule.pattern) == len(best.pattern) and rule.allow:
                best = rule

        return best is None or best.allow

    def summary(self) -> tuple[str, ...]:
        """Human-readable rule lines, as recorded on verdicts."""
        if not self.found:
            return ("No robots.txt found",)
        lines = [str(r) for r in self.path_rules]
        if self.crawl_delay is not None:
            lines.append(f"Crawl-Delay: {self.crawl_delay:g}")
        return tuple(lines)


def _pattern_regex(pattern: str) -> re.Pattern:
    anchored = pattern.endswith("$")
    body = pattern[:-1] if anchored else pattern
    regex = ".*".join(re.escape(part) for part in body.split("*"))
    return re.compile(regex + ("$" if anchored else ""))


def _is_relevant_agent(agent: str, user_agent: str) -> bool:
    agent = agent.lower()
    return agent == "*" or agent == user_agent.lower() or "bot" in agent


def parse_robots(content: str, user_agent: str) -> RobotsRules:
    """
    Parse robots.txt content into the rules relevant to ``user_agent``.

    Args:
        content: Raw robots.txt text
        user_agent: Our crawler's user agent

    Returns:
        RobotsRules merged from every relevant group
    """
    rules = RobotsRules()
    group_agents: list[str] = []
    in_agent_block = False
    relevant = False

    for raw_line in content.splitlines():
        line = raw_line.split("#", 1)[0].strip()
        if not line or ":" not in line:
            continue

        key, value = line.split(":", 1)
        key = key.strip().lower()
        value = value.strip()

        if key == "user-agent":
            # Consecutive User-agent lines share one group
            if not in_agent_block:
                group_agents = []
            group_agents.append(value)
            in_agent_block = True
            relevant = any(_is_relevant_agent(a, user_agent) for a in group_agents)
            continue

        in_agent_block = False
        if not relevant:
            continue

        if key == "disallow":
            rules.path_rules.append(PathRule(allow=False, pattern=value))
        elif key == "allow":
            rules.path_rules.append(PathRule(allow=True, pattern=value))
        elif key == "crawl-delay":
            try:
                rules.crawl_delay = float(value)
            except ValueError:
                logger.debug("invalid_crawl_delay", value=value)

    return rules


class RobotsFetcher:
    """Fetches robots.txt for a host over HTTPS."""

    def __init__(
        self,
        user_agent: str,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize the fetcher.

        Args:
            user_agent: User-Agent header sent with the request
            timeout: Request timeout in seconds
            client: Shared HTTP client (one is created per request if omitted)
        """
        self.user_agent = user_agent
        self.timeout = timeout
        self._client = client

    async def fetch(self, host: str) -> Optional[str]:
        """
        Fetch robots.txt content.

        Returns:
            The file content, or None when the host has no robots.txt (4xx)

        Raises:
            TransportFailure: On network errors, timeouts, or 5xx responses
        """
        url = f"https://{host}/robots.txt"
        headers = {"User-Agent": self.user_agent}

        try:
            if self._client is not None:
                response = await self._client.get(url, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(follow_redirects=True) as client:
                    response = await client.get(url, headers=headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.warning("robots_fetch_failed", host=host, error=str(e))
            raise TransportFailure("robots", str(e) or type(e).__name__) from e

        if response.status_code >= 500:
            raise TransportFailure(
                "robots",
                f"robots.txt returned {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            logger.debug("robots_missing", host=host, status=response.status_code)
            return None

        return response.text
