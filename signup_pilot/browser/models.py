"""Browser session state and action types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from signup_pilot.errors import TransitionError


class SessionStatus(Enum):
    """Lifecycle status of a remote browser session."""

    ACTIVE = "active"
    IDLE = "idle"
    CLOSED = "closed"
    ERROR = "error"

    def is_terminal(self) -> bool:
        return self is SessionStatus.CLOSED


# Valid status transitions. Closed is terminal; error always leads to closed.
SESSION_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.ACTIVE: {SessionStatus.IDLE, SessionStatus.CLOSED, SessionStatus.ERROR},
    SessionStatus.IDLE: {SessionStatus.ACTIVE, SessionStatus.CLOSED},
    SessionStatus.ERROR: {SessionStatus.CLOSED},
    SessionStatus.CLOSED: set(),
}


class BrowserAction:
    """Action names accepted by the session lifecycle manager."""

    NAVIGATE = "navigate"
    INTERACT = "interact"
    EXTRACT = "extract"
    WAIT = "wait"
    SUBMIT_FORM = "submit_form"
    PAYMENT = "payment"


# Actions that need a verified parent approval token
SENSITIVE_ACTIONS = frozenset({
    BrowserAction.INTERACT,
    BrowserAction.SUBMIT_FORM,
    BrowserAction.PAYMENT,
})


@dataclass
class BrowserSession:
    """A remote browser resource owned by one registration attempt."""

    id: str
    attempt_id: str
    created_at: datetime
    last_activity: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    provider_id: Optional[str] = None
    compliance_status: Optional[str] = None
    current_url: Optional[str] = None
    error_count: int = 0
    close_reason: Optional[str] = None

    def transition_to(self, new_status: SessionStatus) -> None:
        """
        Move to a new status.

        Raises:
            TransitionError: If the transition is not allowed
        """
        if new_status not in SESSION_TRANSITIONS[self.status]:
            raise TransitionError(self.status.value, new_status.value, subject=self.id)
        self.status = new_status

    def age_seconds(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds()

    def idle_seconds(self, now: datetime) -> float:
        return (now - self.last_activity).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "attempt_id": self.attempt_id,
            "status": self.status.value,
            "provider_id": self.provider_id,
            "compliance_status": self.compliance_status,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "current_url": self.current_url,
            "error_count": self.error_count,
            "close_reason": self.close_reason,
        }


@dataclass(frozen=True)
class ApprovalToken:
    """A parent's signed approval for a set of sensitive actions."""

    token: str
    issued_at: datetime
    approved_actions: tuple[str, ...]


@dataclass
class ActionRequest:
    """A request to act on a browser session."""

    session_id: str
    action: str
    data: dict[str, Any] = field(default_factory=dict)
    approval: Optional[ApprovalToken] = None


@dataclass
class PageData:
    """Uniform result of a browser call."""

    url: str = ""
    title: str = ""
    html: str = ""
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PageData":
        """Build from a provider response body."""
        return cls(
            url=payload.get("url", ""),
            title=payload.get("title", ""),
            html=payload.get("html", "") or payload.get("content", ""),
            data=payload.get("data", {}) or {},
        )
