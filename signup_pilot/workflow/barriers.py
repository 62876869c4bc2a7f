"""Barrier executors: the work behind each named step of a stage.

The orchestrator knows only stage and barrier names. An executor maps a
barrier onto provider adapter calls and turns adapter outcomes into the
exceptions the orchestrator reacts to: ``HumanInterventionRequired`` pauses
the stage and ``PilotError`` fails it.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from signup_pilot.browser.lifecycle import SessionLifecycleManager
from signup_pilot.browser.models import SessionStatus
from signup_pilot.errors import AdapterFailure, HumanInterventionRequired, SessionUnavailable
from signup_pilot.providers.base import (
    ProviderAdapter,
    ProviderContext,
    ProviderIntent,
    SessionCandidate,
)
from signup_pilot.utils.logging import get_logger
from signup_pilot.workflow.states import Stage, WorkflowState

logger = get_logger("workflow.barriers")

QUEUE_POSITION_PATTERN = re.compile(
    r"(?:position|number|#)\s*(?:in\s+(?:the\s+)?(?:queue|line))?\s*(?:is|:)?\s*#?\s*(\d+)",
    re.IGNORECASE,
)


class BarrierExecutor(ABC):
    """Base class for barrier executors."""

    @abstractmethod
    async def execute(self, state: WorkflowState, stage: Stage, barrier: str) -> None:
        """
        Perform the work behind one barrier.

        Args:
            state: The attempt being run; executors may record results on it
            stage: Stage the barrier belongs to
            barrier: Barrier name

        Raises:
            HumanInterventionRequired: If a human must act before retrying
            PilotError: If the barrier failed
        """
        ...

    async def on_pause(self, attempt_id: str) -> None:
        """Called once after the attempt pauses for a human."""

    async def on_resume(self, attempt_id: str) -> None:
        """Called before a paused attempt continues."""

    async def on_finish(self, attempt_id: str) -> None:
        """Called when the attempt completes or fails."""


class NoopBarrierExecutor(BarrierExecutor):
    """Treats every automatic barrier as passed. Used for dry runs."""

    async def execute(self, state: WorkflowState, stage: Stage, barrier: str) -> None:
        logger.debug("barrier_skipped", stage=stage.id, barrier=barrier)


@dataclass
class AttemptBinding:
    """Provider collaborators bound to one attempt."""

    ctx: ProviderContext
    adapter: ProviderAdapter
    intent: Optional[ProviderIntent] = None
    candidate: Optional[SessionCandidate] = None
    prechecked: bool = False


Handler = Callable[[AttemptBinding, WorkflowState, Stage, str], Awaitable[None]]


class ProviderBarrierExecutor(BarrierExecutor):
    """
    Runs barriers against a provider adapter.

    Barriers without a dedicated handler are page checks: they read the
    current page, which fails if the attempt's session has been closed.
    """

    def __init__(self, lifecycle: SessionLifecycleManager) -> None:
        """
        Initialize the executor.

        Args:
            lifecycle: Session lifecycle manager shared with the adapters
        """
        self.lifecycle = lifecycle
        self._bindings: dict[str, AttemptBinding] = {}
        self._handlers: dict[str, Handler] = {
            "account_form": self._precheck,
            "login_form": self._precheck,
            "credential_validation": self._precheck,
            "session_selection": self._select_session,
            "registration_form": self._reserve,
            "queue_management": self._read_queue_position,
            "payment_form": self._finalize_payment,
            "billing_validation": self._check_billing,
            "confirmation_page": self._check_confirmation,
            "email_receipt": self._skip,
        }

    def bind(
        self,
        ctx: ProviderContext,
        adapter: ProviderAdapter,
        intent: Optional[ProviderIntent] = None,
    ) -> AttemptBinding:
        """Register the provider context an attempt runs with."""
        binding = AttemptBinding(ctx=ctx, adapter=adapter, intent=intent)
        self._bindings[ctx.attempt_id] = binding
        return binding

    def binding_for(self, attempt_id: str) -> AttemptBinding:
        binding = self._bindings.get(attempt_id)
        if binding is None:
            raise KeyError(f"No provider bound to attempt: {attempt_id}")
        return binding

    async def execute(self, state: WorkflowState, stage: Stage, barrier: str) -> None:
        binding = self.binding_for(state.attempt_id)
        handler = self._handlers.get(barrier, self._page_check)
        await handler(binding, state, stage, barrier)

    # -- handlers ------------------------------------------------------------

    async def _precheck(self, binding: AttemptBinding, state: WorkflowState, stage: Stage, barrier: str) -> None:
        if binding.prechecked:
            return
        result = await binding.adapter.precheck(binding.ctx)
        if not result.ok:
            raise AdapterFailure(binding.adapter.platform, "precheck", result.reason or "Precheck failed")
        binding.prechecked = True

    async def _select_session(
        self,
        binding: AttemptBinding,
        state: WorkflowState,
        stage: Stage,
        barrier: str,
    ) -> None:
        candidates = await binding.adapter.find_sessions(binding.ctx, binding.intent)
        if not candidates:
            raise AdapterFailure(binding.adapter.platform, "find_sessions", "No matching sessions found")

        open_candidates = [c for c in candidates if c.availability != "full"]
        binding.candidate = (open_candidates or candidates)[0]
        state.results["candidate"] = binding.candidate.to_dict()
        state.results["candidates_found"] = len(candidates)

        logger.info(
            "session_selected",
            attempt_id=state.attempt_id,
            candidate=binding.candidate.id,
            title=binding.candidate.title,
        )

    def _current_candidate(self, binding: AttemptBinding, state: WorkflowState) -> Optional[SessionCandidate]:
        if binding.candidate is None and state.results.get("candidate"):
            binding.candidate = SessionCandidate.from_dict(state.results["candidate"])
        return binding.candidate

    async def _reserve(self, binding: AttemptBinding, state: WorkflowState, stage: Stage, barrier: str) -> None:
        candidate = self._current_candidate(binding, state)
        if candidate is None:
            await self._select_session(binding, state, stage, barrier)
            candidate = binding.candidate

        result = await binding.adapter.reserve(binding.ctx, candidate)
        if result.needs_captcha:
            raise HumanInterventionRequired(
                stage.id,
                barrier,
                "Human verification is required to submit the registration",
            )
        if result.waitlisted:
            raise AdapterFailure(
                binding.adapter.platform,
                "reserve",
                result.reason or f"Session is waitlisted: {candidate.title}",
            )
        if not result.success:
            raise AdapterFailure(binding.adapter.platform, "reserve", result.reason or "Reservation failed")

        binding.candidate = result.candidate or candidate
        state.results["candidate"] = binding.candidate.to_dict()
        state.results["reserved"] = True

    async def _read_queue_position(
        self,
        binding: AttemptBinding,
        state: WorkflowState,
        stage: Stage,
        barrier: str,
    ) -> None:
        page = await binding.adapter.read_page(binding.ctx)
        text = page.html
        if "queue" not in text.lower() and "in line" not in text.lower():
            return
        match = QUEUE_POSITION_PATTERN.search(text)
        if match:
            state.queue_position = int(match.group(1))
            logger.info("queue_position", attempt_id=state.attempt_id, position=state.queue_position)

    async def _finalize_payment(
        self,
        binding: AttemptBinding,
        state: WorkflowState,
        stage: Stage,
        barrier: str,
    ) -> None:
        candidate = self._current_candidate(binding, state)
        if candidate is None or not state.results.get("reserved"):
            raise AdapterFailure(binding.adapter.platform, "finalize_payment", "No reserved session to pay for")

        result = await binding.adapter.finalize_payment(binding.ctx, candidate)
        if not result.success:
            raise AdapterFailure(
                binding.adapter.platform,
                "finalize_payment",
                result.error or "Payment processing failed",
            )
        state.results["confirmation_id"] = result.confirmation_id

    async def _check_billing(self, binding: AttemptBinding, state: WorkflowState, stage: Stage, barrier: str) -> None:
        if not state.results.get("confirmation_id"):
            raise AdapterFailure(
                binding.adapter.platform,
                "billing_validation",
                "Payment completed without a confirmation id",
            )

    async def _check_confirmation(
        self,
        binding: AttemptBinding,
        state: WorkflowState,
        stage: Stage,
        barrier: str,
    ) -> None:
        confirmation_id = state.results.get("confirmation_id")
        if not confirmation_id:
            raise AdapterFailure(binding.adapter.platform, "confirmation", "Registration was not confirmed")
        logger.info("registration_confirmed", attempt_id=state.attempt_id, confirmation_id=confirmation_id)

    async def _skip(self, binding: AttemptBinding, state: WorkflowState, stage: Stage, barrier: str) -> None:
        logger.debug("barrier_skipped", stage=stage.id, barrier=barrier)

    async def _page_check(self, binding: AttemptBinding, state: WorkflowState, stage: Stage, barrier: str) -> None:
        if binding.ctx.session_id is None:
            return
        await binding.adapter.read_page(binding.ctx)

    # -- session hooks -------------------------------------------------------

    async def on_pause(self, attempt_id: str) -> None:
        binding = self._bindings.get(attempt_id)
        if binding and binding.ctx.session_id:
            await self.lifecycle.mark_idle(binding.ctx.session_id)

    async def on_resume(self, attempt_id: str) -> None:
        binding = self._bindings.get(attempt_id)
        if binding is None or binding.ctx.session_id is None:
            return

        session = self.lifecycle.get_session(binding.ctx.session_id)
        if session is None or session.status in (SessionStatus.CLOSED, SessionStatus.ERROR):
            # Closed while waiting for the human; the next call opens a new one
            logger.info("session_replaced_after_pause", attempt_id=attempt_id, session_id=binding.ctx.session_id)
            binding.ctx.session_id = None
        elif session.status is SessionStatus.IDLE:
            try:
                await self.lifecycle.reactivate(session.id)
            except SessionUnavailable:
                binding.ctx.session_id = None

    async def on_finish(self, attempt_id: str) -> None:
        binding = self._bindings.pop(attempt_id, None)
        if binding and binding.ctx.session_id:
            await self.lifecycle.close_session(binding.ctx.session_id, "Attempt finished")
