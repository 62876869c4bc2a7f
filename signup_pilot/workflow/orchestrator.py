"""Multi-stage workflow orchestrator for registration attempts."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, Sequence

from signup_pilot.audit import AuditEventType, AuditLog
from signup_pilot.config.settings import WorkflowConfig
from signup_pilot.errors import (
    ApprovalRequired,
    CheckpointError,
    HumanInterventionRequired,
    PilotError,
    TransitionError,
)
from signup_pilot.utils.locks import KeyedLocks
from signup_pilot.utils.logging import get_logger, log_stage_timing, set_attempt_context, set_stage
from signup_pilot.workflow.barriers import BarrierExecutor
from signup_pilot.workflow.checkpoints import (
    CheckpointStore,
    checkpoint_from_state,
    state_from_checkpoint,
)
from signup_pilot.workflow.notifications import HumanNotifier, InterventionRequest
from signup_pilot.workflow.stages import (
    DEFAULT_PIPELINE,
    StageDefinition,
    build_stages,
    is_human_gated,
    progress_after,
    remaining_minutes,
)
from signup_pilot.workflow.states import AttemptStatus, Stage, StageStatus, WorkflowState

logger = get_logger("workflow.orchestrator")


class WorkflowOrchestrator:
    """
    Sequences the stages of registration attempts.

    Each stage runs its barriers in order. Human-gated barriers pause the
    stage until ``resume`` is called; a failing barrier fails the stage and
    halts the attempt. A checkpoint is written before every stage starts and
    after it completes, fails or pauses.
    """

    def __init__(
        self,
        store: CheckpointStore,
        executor: BarrierExecutor,
        notifier: HumanNotifier,
        config: Optional[WorkflowConfig] = None,
        audit: Optional[AuditLog] = None,
        pipeline: Sequence[StageDefinition] = DEFAULT_PIPELINE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            store: Checkpoint persistence
            executor: Runs the automatable barriers
            notifier: Told about every pause
            config: Workflow settings
            audit: Optional audit log
            pipeline: Stage definitions, in order
            sleep: Awaitable used for the delay between stages
        """
        self.store = store
        self.executor = executor
        self.notifier = notifier
        self.config = config or WorkflowConfig()
        self.audit = audit
        self.pipeline = tuple(pipeline)
        self._sleep = sleep
        self._states: dict[str, WorkflowState] = {}
        self._locks = KeyedLocks()

    def _new_state(self, attempt_id: str) -> WorkflowState:
        stages = build_stages(self.pipeline, self.config.intervention_barriers)
        return WorkflowState(
            attempt_id=attempt_id,
            stages=stages,
            estimated_time_remaining=remaining_minutes(stages, None),
        )

    async def _audit(self, event_type: str, payload: dict[str, Any]) -> None:
        if self.audit is not None:
            await self.audit.record(event_type, payload)

    # -- persistence ---------------------------------------------------------

    async def _checkpoint(self, state: WorkflowState) -> None:
        checkpoint = checkpoint_from_state(state)
        await self.store.save_checkpoint(
            attempt_id=checkpoint.attempt_id,
            stage_index=checkpoint.stage_index,
            completed_stage_ids=checkpoint.completed_stage_ids,
            metadata=checkpoint.metadata,
            current_stage=checkpoint.current_stage,
        )
        state.last_checkpoint_id = checkpoint.step_name
        state.can_recover = True

    async def _restore(self, attempt_id: str) -> Optional[WorkflowState]:
        try:
            checkpoint = await self.store.restore_checkpoint(attempt_id)
        except CheckpointError as e:
            logger.warning("checkpoint_restore_failed", attempt_id=attempt_id, error=str(e))
            return None
        if checkpoint is None:
            return None

        state = state_from_checkpoint(
            checkpoint,
            build_stages(self.pipeline, self.config.intervention_barriers),
        )
        logger.info(
            "checkpoint_restored",
            attempt_id=attempt_id,
            step=checkpoint.step_name,
            status=state.status.value,
        )
        return state

    def _forget(self, attempt_id: str) -> None:
        # Finished attempts are served from their checkpoint from here on
        self._states.pop(attempt_id, None)

    async def _load(self, attempt_id: str) -> WorkflowState:
        state = self._states.get(attempt_id)
        if state is None:
            state = await self._restore(attempt_id)
            if state is not None:
                self._states[attempt_id] = state
        if state is None:
            raise KeyError(f"Unknown attempt: {attempt_id}")
        return state

    # -- public operations ---------------------------------------------------

    async def start(self, attempt_id: str) -> WorkflowState:
        """
        Start an attempt, or report where an existing one stands.

        A new attempt runs from its first stage. An attempt with a checkpoint
        is restored and returned as it is; paused and failed attempts only
        continue through ``resume`` or ``recover``.

        Returns:
            The attempt's state when processing stops
        """
        async with self._locks.hold(attempt_id):
            set_attempt_context(attempt_id)
            state = self._states.get(attempt_id) or await self._restore(attempt_id)
            if state is None:
                state = self._new_state(attempt_id)
            self._states[attempt_id] = state

            if state.status is not AttemptStatus.PENDING:
                logger.info("attempt_already_started", attempt_id=attempt_id, status=state.status.value)
                return state

            logger.info("attempt_started", attempt_id=attempt_id, stages=len(state.stages))
            return await self._run(state, state.current_stage_index, 0)

    async def resume(self, attempt_id: str, stage_id: str) -> WorkflowState:
        """
        Continue a paused stage after a human has acted.

        Args:
            attempt_id: Attempt identifier
            stage_id: Id of the paused stage

        Returns:
            The attempt's state when processing stops

        Raises:
            KeyError: If the attempt or stage is unknown
            TransitionError: If the stage is not the attempt's paused stage
        """
        async with self._locks.hold(attempt_id):
            set_attempt_context(attempt_id, stage_id)
            state = await self._load(attempt_id)
            index = state.index_of(stage_id)
            stage = state.stages[index]

            if index != state.current_stage_index or stage.status is not StageStatus.PAUSED:
                raise TransitionError(stage.status.value, StageStatus.IN_PROGRESS.value, subject=f"stage {stage_id}")

            logger.info(
                "stage_resumed",
                attempt_id=attempt_id,
                stage=stage_id,
                barrier=state.paused_barrier,
            )
            await self.executor.on_resume(attempt_id)
            state.paused_barrier = None
            return await self._run(state, index, state.resume_barrier_index)

    async def recover(self, attempt_id: str) -> WorkflowState:
        """
        Rebuild an attempt from its last checkpoint and continue it.

        Paused and completed attempts are returned unchanged. A failed or
        interrupted stage is rebuilt as a fresh pending stage and rerun
        from its first barrier.

        Raises:
            KeyError: If the attempt has no checkpoint
        """
        async with self._locks.hold(attempt_id):
            set_attempt_context(attempt_id)
            state = await self._restore(attempt_id)
            if state is None:
                raise KeyError(f"No checkpoint for attempt: {attempt_id}")
            self._states[attempt_id] = state

            if state.status in (AttemptStatus.PAUSED, AttemptStatus.COMPLETED):
                return state

            index = state.current_stage_index
            stage = state.stages[index]
            if stage.status is not StageStatus.PENDING:
                state.stages[index] = Stage(
                    id=stage.id,
                    name=stage.name,
                    barriers=stage.barriers,
                    estimated_minutes=stage.estimated_minutes,
                    requires_intervention=stage.requires_intervention,
                )
            state.failure_reason = None
            state.error_code = None

            logger.info("attempt_recovering", attempt_id=attempt_id, stage=stage.id)
            return await self._run(state, index, 0)

    def report_queue_position(self, attempt_id: str, position: int) -> None:
        """Record a provider-reported queue position; it is saved with the next checkpoint."""
        state = self._states.get(attempt_id)
        if state is None:
            raise KeyError(f"Unknown attempt: {attempt_id}")
        state.queue_position = position

    async def status(self, attempt_id: str) -> Optional[WorkflowState]:
        """Current state of an attempt, from memory or its checkpoint."""
        state = self._states.get(attempt_id)
        if state is not None:
            return state
        return await self._restore(attempt_id)

    # -- stage processing ----------------------------------------------------

    async def _run(self, state: WorkflowState, index: int, barrier_index: int) -> WorkflowState:
        total = len(state.stages)
        while index < total:
            stage = state.stages[index]
            self._require_predecessors_completed(state, index)

            set_stage(stage.id)
            stage.transition_to(StageStatus.IN_PROGRESS)
            state.current_stage_index = index
            state.status = AttemptStatus.RUNNING
            await self._checkpoint(state)

            logger.info("stage_started", attempt_id=state.attempt_id, stage=stage.id, barrier_index=barrier_index)
            started = time.monotonic()

            if not await self._run_barriers(state, stage, barrier_index):
                return state

            stage.transition_to(StageStatus.COMPLETED)
            state.total_progress = progress_after(index, total)
            state.estimated_time_remaining = remaining_minutes(state.stages, index)
            state.resume_barrier_index = 0
            log_stage_timing(stage.id, time.monotonic() - started)

            if index == total - 1:
                state.status = AttemptStatus.COMPLETED
                await self._checkpoint(state)
                logger.info("attempt_completed", attempt_id=state.attempt_id, results=state.results)
                await self.executor.on_finish(state.attempt_id)
                self._forget(state.attempt_id)
                return state

            await self._checkpoint(state)
            await self._sleep(self.config.stage_delay_seconds)
            index += 1
            barrier_index = 0

        return state

    def _require_predecessors_completed(self, state: WorkflowState, index: int) -> None:
        for earlier in state.stages[:index]:
            if earlier.status is not StageStatus.COMPLETED:
                raise TransitionError(
                    earlier.status.value,
                    StageStatus.IN_PROGRESS.value,
                    subject=f"stage {state.stages[index].id} before {earlier.id} completed",
                )

    async def _run_barriers(self, state: WorkflowState, stage: Stage, start: int) -> bool:
        """Run barriers from ``start``. Returns False if the stage paused or failed."""
        for barrier_index in range(start, len(stage.barriers)):
            barrier = stage.barriers[barrier_index]

            if is_human_gated(barrier, self.config.intervention_barriers):
                # A human clears this barrier; resume continues after it
                await self._pause(state, stage, barrier, barrier_index + 1)
                return False

            try:
                await self.executor.execute(state, stage, barrier)
            except HumanInterventionRequired as e:
                # The barrier itself is retried after the human acts
                await self._pause(state, stage, barrier, barrier_index, reason=e.message)
                return False
            except ApprovalRequired as e:
                await self._pause(state, stage, barrier, barrier_index, reason=e.message)
                return False
            except PilotError as e:
                await self._fail(state, stage, barrier, e.message, e.error_code)
                return False
            except Exception as e:
                logger.exception("barrier_crashed", attempt_id=state.attempt_id, stage=stage.id, barrier=barrier)
                await self._fail(state, stage, barrier, str(e) or type(e).__name__, "UNEXPECTED_ERROR")
                return False

            logger.debug("barrier_cleared", attempt_id=state.attempt_id, stage=stage.id, barrier=barrier)

        return True

    async def _pause(
        self,
        state: WorkflowState,
        stage: Stage,
        barrier: str,
        resume_index: int,
        reason: str = "",
    ) -> None:
        stage.transition_to(StageStatus.PAUSED)
        state.status = AttemptStatus.PAUSED
        state.paused_barrier = barrier
        state.resume_barrier_index = resume_index
        await self._checkpoint(state)

        logger.warning(
            "stage_paused",
            attempt_id=state.attempt_id,
            stage=stage.id,
            barrier=barrier,
            checkpoint=state.last_checkpoint_id,
        )
        await self._audit(AuditEventType.HUMAN_INTERVENTION_REQUESTED, {
            "attempt_id": state.attempt_id,
            "stage_id": stage.id,
            "barrier": barrier,
            "reason": reason,
        })

        try:
            await self.executor.on_pause(state.attempt_id)
        except PilotError as e:
            logger.warning("pause_hook_failed", attempt_id=state.attempt_id, error=str(e))

        delivered = await self.notifier.notify(InterventionRequest(
            attempt_id=state.attempt_id,
            stage_id=stage.id,
            barrier=barrier,
            reason=reason,
        ))
        if not delivered:
            logger.error("intervention_notification_failed", attempt_id=state.attempt_id, stage=stage.id)

    async def _fail(
        self,
        state: WorkflowState,
        stage: Stage,
        barrier: str,
        reason: str,
        error_code: str,
    ) -> None:
        stage.transition_to(StageStatus.FAILED)
        stage.error = reason
        state.status = AttemptStatus.FAILED
        state.failure_reason = reason
        state.error_code = error_code
        await self._checkpoint(state)

        logger.error(
            "stage_failed",
            attempt_id=state.attempt_id,
            stage=stage.id,
            barrier=barrier,
            reason=reason,
            error_code=error_code,
        )
        await self._audit(AuditEventType.STAGE_FAILED, {
            "attempt_id": state.attempt_id,
            "stage_id": stage.id,
            "barrier": barrier,
            "reason": reason,
            "error_code": error_code,
        })

        try:
            await self.executor.on_finish(state.attempt_id)
        except PilotError as e:
            logger.warning("finish_hook_failed", attempt_id=state.attempt_id, error=str(e))
        self._forget(state.attempt_id)
