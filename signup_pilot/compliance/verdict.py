"""Compliance verdict types."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional


class ComplianceStatus(Enum):
    """Whether automated access to a URL is permitted."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"

    def permits_access(self) -> bool:
        """Green and yellow both permit access; yellow must be reviewed."""
        return self is not ComplianceStatus.RED


# Confidence reported alongside a status when nothing more specific is known
DEFAULT_CONFIDENCE: dict[ComplianceStatus, float] = {
    ComplianceStatus.GREEN: 0.9,
    ComplianceStatus.YELLOW: 0.6,
    ComplianceStatus.RED: 0.1,
}


@dataclass(frozen=True)
class Verdict:
    """Compliance decision for a (host, path) pair."""

    status: ComplianceStatus
    confidence: float
    reason: str
    host: str
    path: str = "/"
    rules: tuple[str, ...] = ()
    provider_type: Optional[str] = None
    from_cache: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_red(self) -> bool:
        return self.status is ComplianceStatus.RED

    @property
    def is_yellow(self) -> bool:
        return self.status is ComplianceStatus.YELLOW

    def cached(self) -> "Verdict":
        """Copy of this verdict marked as served from cache."""
        return replace(self, from_cache=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "confidence": self.confidence,
            "reason": self.reason,
            "host": self.host,
            "path": self.path,
            "rules": list(self.rules),
            "provider_type": self.provider_type,
            "from_cache": self.from_cache,
            "details": self.details,
        }
