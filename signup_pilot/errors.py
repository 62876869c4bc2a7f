"""
Exception hierarchy for registration automation.

Every failure the orchestrator can observe maps onto one of these types so
that stage boundaries can record a stable ``error_code`` alongside the
human-readable reason.
"""

from __future__ import annotations

from typing import Any, Optional


class PilotError(Exception):
    """Base exception for all registration automation errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code or "PILOT_ERROR"
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Code: {self.error_code}, Details: {self.details})"
        return f"{self.message} (Code: {self.error_code})"


class ComplianceDenied(PilotError):
    """Raised when the compliance verdict for a URL is red."""

    def __init__(self, url: str, reason: str, confidence: float = 0.0) -> None:
        super().__init__(
            f"Automated access denied for {url}: {reason}",
            "COMPLIANCE_DENIED",
            {"url": url, "reason": reason, "confidence": confidence},
        )
        self.url = url
        self.reason = reason


class RateLimited(PilotError):
    """Raised when a host's request budget is exhausted."""

    def __init__(self, host: str, wait_ms: int, attempts: int = 1) -> None:
        super().__init__(
            f"Rate limited by {host}, retry in {wait_ms}ms",
            "RATE_LIMITED",
            {"host": host, "wait_ms": wait_ms, "attempts": attempts},
        )
        self.host = host
        self.wait_ms = wait_ms


class SessionUnavailable(PilotError):
    """Raised when a browser session is missing, closed, or not active."""

    def __init__(self, session_id: str, status: Optional[str] = None) -> None:
        if status is None:
            message = f"Session not found: {session_id}"
        else:
            message = f"Session {session_id} is not active (status: {status})"
        super().__init__(
            message,
            "SESSION_UNAVAILABLE",
            {"session_id": session_id, "status": status},
        )
        self.session_id = session_id
        self.status = status


class HumanInterventionRequired(PilotError):
    """
    Control-flow signal: a barrier needs a human before work can continue.

    Not a failure. The orchestrator turns it into a paused stage.
    """

    def __init__(self, stage_id: str, barrier: str, reason: str = "") -> None:
        super().__init__(
            reason or f"Barrier '{barrier}' in stage '{stage_id}' requires a human",
            "HUMAN_INTERVENTION_REQUIRED",
            {"stage_id": stage_id, "barrier": barrier},
        )
        self.stage_id = stage_id
        self.barrier = barrier


class ApprovalRequired(PilotError):
    """Raised when a sensitive action lacks a verified approval token."""

    def __init__(self, session_id: str, action: str) -> None:
        super().__init__(
            f"Action '{action}' requires parent approval",
            "APPROVAL_REQUIRED",
            {"session_id": session_id, "action": action},
        )
        self.session_id = session_id
        self.action = action


class AdapterFailure(PilotError):
    """A provider adapter reported ``success: false``; the reason is kept verbatim."""

    def __init__(self, provider: str, operation: str, reason: str) -> None:
        super().__init__(
            reason,
            "ADAPTER_FAILURE",
            {"provider": provider, "operation": operation},
        )
        self.provider = provider
        self.operation = operation
        self.reason = reason


class TransportFailure(PilotError):
    """Network, timeout, or remote error talking to an external service."""

    def __init__(
        self,
        service: str,
        message: str,
        status_code: Optional[int] = None,
    ) -> None:
        details: dict[str, Any] = {"service": service}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(f"{service}: {message}", "TRANSPORT_FAILURE", details)
        self.service = service
        self.status_code = status_code


class TransitionError(PilotError):
    """Invalid state transition."""

    def __init__(self, from_state: str, to_state: str, subject: str = "") -> None:
        message = f"Invalid transition: {from_state} -> {to_state}"
        if subject:
            message = f"{message} ({subject})"
        super().__init__(
            message,
            "INVALID_TRANSITION",
            {"from": from_state, "to": to_state},
        )
        self.from_state = from_state
        self.to_state = to_state


class CheckpointError(PilotError):
    """Checkpoint could not be written or read."""

    def __init__(self, attempt_id: str, message: str) -> None:
        super().__init__(message, "CHECKPOINT_ERROR", {"attempt_id": attempt_id})
        self.attempt_id = attempt_id
