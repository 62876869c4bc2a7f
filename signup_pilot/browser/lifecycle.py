"""Session lifecycle manager for remote browser sessions."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, TypeVar

from signup_pilot.audit import AuditEventType, AuditLog
from signup_pilot.browser.approval import ApprovalVerifier
from signup_pilot.browser.client import BrowserProvider
from signup_pilot.browser.models import (
    SENSITIVE_ACTIONS,
    ActionRequest,
    BrowserAction,
    BrowserSession,
    PageData,
    SessionStatus,
)
from signup_pilot.compliance.gate import ComplianceGate
from signup_pilot.compliance.rate_limiter import RateLimiter
from signup_pilot.config.settings import SessionConfig
from signup_pilot.errors import (
    ApprovalRequired,
    ComplianceDenied,
    SessionUnavailable,
    TransportFailure,
)
from signup_pilot.utils.locks import KeyedLocks
from signup_pilot.utils.logging import get_logger

logger = get_logger("browser.lifecycle")

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionLifecycleManager:
    """
    Owns every live remote browser session.

    The manager is the only code that mutates session state. Each session
    is guarded by its own lock; provider calls run outside the lock so a
    concurrent close is observed by the in-flight action as a failure.
    """

    def __init__(
        self,
        provider: BrowserProvider,
        gate: ComplianceGate,
        rate_limiter: Optional[RateLimiter] = None,
        config: Optional[SessionConfig] = None,
        approvals: Optional[ApprovalVerifier] = None,
        audit: Optional[AuditLog] = None,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        """
        Initialize the manager.

        Args:
            provider: Remote browser automation provider
            gate: Compliance gate consulted before creation and navigation
            rate_limiter: Per-host budget consulted before navigation
            config: Lifecycle thresholds
            approvals: Verifier for sensitive-action approval tokens
            audit: Audit log for session open/close events
            now: Clock returning timezone-aware datetimes
        """
        self.provider = provider
        self.gate = gate
        self.rate_limiter = rate_limiter
        self.config = config or SessionConfig()
        self.approvals = approvals
        self.audit = audit
        self._now = now
        self._sessions: dict[str, BrowserSession] = {}
        self._locks = KeyedLocks()
        self._cleanup_task: Optional[asyncio.Task] = None

    async def _call(self, coro: Awaitable[T], what: str) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.config.action_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransportFailure(
                "browser",
                f"{what} timed out after {self.config.action_timeout_seconds}s",
            ) from e

    async def _audit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.audit is not None:
            await self.audit.record(event_type, payload)

    # -- creation ------------------------------------------------------------

    async def create_session(
        self,
        attempt_id: str,
        url: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> BrowserSession:
        """
        Create a session for an attempt.

        An attempt holds at most one open session; if it already has one,
        that session is returned (reactivated if idle).

        Args:
            attempt_id: Registration attempt that will own the session
            url: Optional URL to open, checked against the compliance gate
            provider_id: Optional provider identifier for the gate

        Returns:
            The active BrowserSession

        Raises:
            ComplianceDenied: If the URL's verdict is red
            TransportFailure: If the provider cannot create a session
        """
        existing = self.session_for_attempt(attempt_id)
        if existing is not None:
            if existing.status is SessionStatus.IDLE:
                await self.reactivate(existing.id)
            return existing

        compliance_status = None
        if url:
            verdict = await self.gate.evaluate(url, provider_id)
            if verdict.is_red:
                logger.warning("session_denied", attempt_id=attempt_id, url=url, reason=verdict.reason)
                raise ComplianceDenied(url, verdict.reason, verdict.confidence)
            compliance_status = verdict.status.value
            if self.rate_limiter is not None:
                await self.rate_limiter.wait_if_needed(url)

        session_id = await self._call(self.provider.create(url), "session creation")

        now = self._now()
        session = BrowserSession(
            id=session_id,
            attempt_id=attempt_id,
            created_at=now,
            last_activity=now,
            provider_id=provider_id,
            compliance_status=compliance_status,
            current_url=url,
        )
        self._sessions[session_id] = session

        logger.info("session_created", session_id=session_id, attempt_id=attempt_id, url=url)
        await self._audit(AuditEventType.SESSION_OPENED, {
            "session_id": session_id,
            "attempt_id": attempt_id,
            "url": url,
            "compliance_status": compliance_status,
        })
        return session

    # -- actions -------------------------------------------------------------

    async def execute_action(self, request: ActionRequest) -> PageData:
        """
        Execute an action on an active session.

        Args:
            request: Action to run

        Returns:
            PageData returned by the provider

        Raises:
            SessionUnavailable: If the session is missing, not active, or closed mid-action
            ApprovalRequired: If a sensitive action lacks a verified approval token
            TransportFailure: If the provider call fails or times out
        """
        session = self._sessions.get(request.session_id)
        if session is None:
            raise SessionUnavailable(request.session_id)

        async with self._locks.hold(session.id):
            if session.status is not SessionStatus.ACTIVE:
                raise SessionUnavailable(session.id, session.status.value)

        if request.action in SENSITIVE_ACTIONS:
            approved = self.approvals is not None and self.approvals.verify(
                request.approval, request.action, session.attempt_id
            )
            if not approved:
                raise ApprovalRequired(session.id, request.action)

        try:
            page = await self._call(self._dispatch(session.id, request), request.action)
        except TransportFailure as e:
            if session.status is SessionStatus.CLOSED:
                # Closed while the call was in flight
                raise SessionUnavailable(session.id, session.status.value) from e
            await self._record_failure(session, e)
            raise

        async with self._locks.hold(session.id):
            if session.status is not SessionStatus.ACTIVE:
                # Closed while the call was in flight
                raise SessionUnavailable(session.id, session.status.value)
            session.error_count = 0
            session.last_activity = self._now()
            if request.action == BrowserAction.NAVIGATE:
                session.current_url = page.url or request.data.get("url")
            elif page.url:
                session.current_url = page.url

        return page

    async def _dispatch(self, session_id: str, request: ActionRequest) -> PageData:
        action = request.action
        data = request.data

        if action == BrowserAction.NAVIGATE:
            return await self.provider.navigate(session_id, data["url"])
        if action in SENSITIVE_ACTIONS:
            return await self.provider.interact(session_id, data.get("steps", []))
        if action == BrowserAction.EXTRACT:
            return await self.provider.extract(
                session_id,
                selector=data.get("selector"),
                wait_for=data.get("wait_for"),
            )
        if action == BrowserAction.WAIT:
            return await self.provider.extract(session_id, wait_for=data.get("wait_for"))

        raise ValueError(f"Unknown browser action: {action}")

    async def _record_failure(self, session: BrowserSession, error: TransportFailure) -> None:
        async with self._locks.hold(session.id):
            if session.status is not SessionStatus.ACTIVE:
                return
            session.error_count += 1
            logger.warning(
                "session_action_failed",
                session_id=session.id,
                error_count=session.error_count,
                error=str(error),
            )
            if session.error_count < self.config.max_error_count:
                return
            session.transition_to(SessionStatus.ERROR)
            await self._close_locked(session, "Too many errors")

    async def navigate_with_compliance(
        self,
        session_id: str,
        url: str,
        provider_id: Optional[str] = None,
    ) -> PageData:
        """
        Navigate after passing the compliance gate and rate limiter.

        Raises:
            ComplianceDenied: If the URL's verdict is red
            RateLimited: If the host's budget stays exhausted
        """
        verdict = await self.gate.evaluate(url, provider_id)
        if verdict.is_red:
            raise ComplianceDenied(url, verdict.reason, verdict.confidence)

        if verdict.is_yellow:
            logger.warning("navigation_needs_review", session_id=session_id, url=url, reason=verdict.reason)
            await self._audit(AuditEventType.NAVIGATION_NEEDS_REVIEW, {
                "session_id": session_id,
                "url": url,
                "reason": verdict.reason,
                "confidence": verdict.confidence,
            })

        if self.rate_limiter is not None:
            await self.rate_limiter.wait_if_needed(url)

        return await self.execute_action(ActionRequest(
            session_id=session_id,
            action=BrowserAction.NAVIGATE,
            data={"url": url},
        ))

    # -- idle / resume -------------------------------------------------------

    async def mark_idle(self, session_id: str) -> None:
        """Park an active session while its attempt waits for a human."""
        session = self._sessions.get(session_id)
        if session is None:
            return
        async with self._locks.hold(session_id):
            if session.status is SessionStatus.ACTIVE:
                session.transition_to(SessionStatus.IDLE)

    async def reactivate(self, session_id: str) -> BrowserSession:
        """
        Return an idle session to active.

        Raises:
            SessionUnavailable: If the session is missing or already closed
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionUnavailable(session_id)
        async with self._locks.hold(session_id):
            if session.status is SessionStatus.IDLE:
                session.transition_to(SessionStatus.ACTIVE)
                session.last_activity = self._now()
            elif session.status is not SessionStatus.ACTIVE:
                raise SessionUnavailable(session_id, session.status.value)
        return session

    # -- teardown ------------------------------------------------------------

    async def close_session(self, session_id: str, reason: str = "") -> None:
        """
        Close a session. The session ends closed even if the provider call fails.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return
        async with self._locks.hold(session_id):
            await self._close_locked(session, reason)

    async def _close_locked(self, session: BrowserSession, reason: str) -> None:
        if session.status is SessionStatus.CLOSED:
            return

        try:
            await self._call(self.provider.close(session.id), "session close")
        except TransportFailure as e:
            logger.error("session_close_failed", session_id=session.id, error=str(e))

        session.transition_to(SessionStatus.CLOSED)
        session.close_reason = reason

        logger.info("session_closed", session_id=session.id, reason=reason)
        await self._audit(AuditEventType.SESSION_CLOSED, {
            "session_id": session.id,
            "attempt_id": session.attempt_id,
            "reason": reason,
        })

    async def cleanup(self) -> list[str]:
        """
        Close sessions that are too old, too idle, or in error, then evict closed ones.

        Returns:
            IDs of sessions closed by this run
        """
        now = self._now()
        to_close: list[tuple[str, str]] = []

        for session in list(self._sessions.values()):
            if session.status is SessionStatus.CLOSED:
                continue
            if session.status is SessionStatus.ERROR:
                to_close.append((session.id, "Session error"))
            elif session.age_seconds(now) > self.config.max_duration_seconds:
                to_close.append((session.id, "Max session duration exceeded"))
            elif session.idle_seconds(now) > self.config.max_idle_seconds:
                to_close.append((session.id, "Idle timeout"))

        for session_id, reason in to_close:
            await self.close_session(session_id, reason)

        for session_id, session in list(self._sessions.items()):
            if session.status is SessionStatus.CLOSED:
                del self._sessions[session_id]

        if to_close:
            logger.info("sessions_cleaned_up", closed=len(to_close), remaining=len(self._sessions))
        return [session_id for session_id, _ in to_close]

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.cleanup_interval_seconds)
            try:
                await self.cleanup()
            except Exception as e:
                logger.error("session_cleanup_failed", error=str(e))

    def start(self) -> None:
        """Start periodic cleanup. Must be called from a running event loop."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(self._cleanup_loop())

    async def shutdown(self) -> None:
        """Stop cleanup and close every open session."""
        logger.info("lifecycle_shutdown", open_sessions=len(self.open_sessions()))

        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        await asyncio.gather(*(
            self.close_session(session.id, "Application shutdown")
            for session in self.open_sessions()
        ))
        self._sessions.clear()

    # -- queries -------------------------------------------------------------

    def get_session(self, session_id: str) -> Optional[BrowserSession]:
        return self._sessions.get(session_id)

    def session_for_attempt(self, attempt_id: str) -> Optional[BrowserSession]:
        """The attempt's open (active or idle) session, if any."""
        for session in self._sessions.values():
            if session.attempt_id == attempt_id and session.status in (
                SessionStatus.ACTIVE,
                SessionStatus.IDLE,
            ):
                return session
        return None

    def active_sessions(self) -> list[BrowserSession]:
        return [s for s in self._sessions.values() if s.status is SessionStatus.ACTIVE]

    def open_sessions(self) -> list[BrowserSession]:
        return [
            s for s in self._sessions.values()
            if s.status in (SessionStatus.ACTIVE, SessionStatus.IDLE)
        ]
