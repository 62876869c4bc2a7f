"""Tests for the workflow orchestrator."""

import pytest

from conftest import RecordingNotifier, ScriptedExecutor

from signup_pilot.audit import AuditEventType
from signup_pilot.config.settings import WorkflowConfig
from signup_pilot.errors import (
    AdapterFailure,
    ApprovalRequired,
    HumanInterventionRequired,
    TransitionError,
)
from signup_pilot.workflow import (
    AttemptStatus,
    Checkpoint,
    CheckpointMetadata,
    MemoryCheckpointStore,
    StageDefinition,
    StageStatus,
    WorkflowOrchestrator,
)

PIPELINE = (
    StageDefinition("intake", "Intake", ("intake_form",), 1),
    StageDefinition("account", "Account", ("account_form", "profile_form"), 2),
    StageDefinition("verify", "Verify", ("potential_captcha",), 1),
    StageDefinition("enroll", "Enroll", ("enroll_form",), 3),
    StageDefinition("receipt", "Receipt", ("receipt_page",), 1),
)


class TestPauseAndResume:
    """Human-gated barriers pause the attempt until resumed."""

    def setup_method(self):
        self.store = MemoryCheckpointStore()
        self.executor = ScriptedExecutor()
        self.notifier = RecordingNotifier()
        self.delays = []
        self.orchestrator = self._orchestrator()

    def _orchestrator(self, config=None, audit=None):
        async def sleep(seconds):
            self.delays.append(seconds)

        return WorkflowOrchestrator(
            store=self.store,
            executor=self.executor,
            notifier=self.notifier,
            config=config or WorkflowConfig(stage_delay_seconds=2),
            audit=audit,
            pipeline=PIPELINE,
            sleep=sleep,
        )

    async def test_captcha_stage_pauses_after_earlier_stages_complete(self):
        state = await self.orchestrator.start("att-1")

        assert state.status is AttemptStatus.PAUSED
        assert [s.status for s in state.stages] == [
            StageStatus.COMPLETED,
            StageStatus.COMPLETED,
            StageStatus.PAUSED,
            StageStatus.PENDING,
            StageStatus.PENDING,
        ]
        assert state.total_progress == 40.0
        assert state.estimated_time_remaining == 5

        checkpoint = self.store.checkpoints["att-1"]
        assert checkpoint.step_name == "stage_2"
        assert checkpoint.current_stage == "verify"
        assert checkpoint.completed_stage_ids == ("intake", "account")
        assert checkpoint.metadata.paused_barrier == "potential_captcha"
        assert checkpoint.metadata.total_progress == 40.0

    async def test_gated_barrier_is_never_automated(self):
        await self.orchestrator.start("att-1")

        assert ("verify", "potential_captcha") not in self.executor.executed
        assert self.executor.executed == [
            ("intake", "intake_form"),
            ("account", "account_form"),
            ("account", "profile_form"),
        ]

    async def test_pause_notifies_exactly_once(self, audit):
        orchestrator = self._orchestrator(audit=audit)

        await orchestrator.start("att-1")
        await orchestrator.start("att-1")

        assert len(self.notifier.requests) == 1
        request = self.notifier.requests[0]
        assert (request.attempt_id, request.stage_id, request.barrier) == ("att-1", "verify", "potential_captcha")
        assert len(audit.of_type(AuditEventType.HUMAN_INTERVENTION_REQUESTED)) == 1
        assert self.executor.hooks == [("pause", "att-1")]

    async def test_undelivered_notification_keeps_attempt_paused(self):
        self.notifier.delivered = False

        state = await self.orchestrator.start("att-1")

        assert state.status is AttemptStatus.PAUSED

    async def test_resume_runs_to_completion(self):
        await self.orchestrator.start("att-1")

        state = await self.orchestrator.resume("att-1", "verify")

        assert state.status is AttemptStatus.COMPLETED
        assert state.total_progress == 100.0
        assert state.estimated_time_remaining == 0
        assert state.paused_barrier is None
        assert all(s.status is StageStatus.COMPLETED for s in state.stages)
        assert self.executor.hooks == [("pause", "att-1"), ("resume", "att-1"), ("finish", "att-1")]
        assert self.store.checkpoints["att-1"].metadata.attempt_status == "completed"
        assert len(self.notifier.requests) == 1

    async def test_finished_attempt_is_released_from_memory(self):
        await self.orchestrator.start("att-1")
        assert "att-1" in self.orchestrator._states

        await self.orchestrator.resume("att-1", "verify")
        state = await self.orchestrator.status("att-1")

        assert "att-1" not in self.orchestrator._states
        assert len(self.orchestrator._locks) == 0
        assert state.status is AttemptStatus.COMPLETED

    async def test_delay_between_stages(self):
        await self.orchestrator.start("att-1")
        await self.orchestrator.resume("att-1", "verify")

        assert self.delays == [2, 2, 2, 2]

    async def test_resume_of_stage_that_is_not_paused_fails(self):
        await self.orchestrator.start("att-1")

        with pytest.raises(TransitionError):
            await self.orchestrator.resume("att-1", "enroll")

    async def test_resume_of_unknown_stage_fails(self):
        await self.orchestrator.start("att-1")

        with pytest.raises(KeyError):
            await self.orchestrator.resume("att-1", "nope")

    async def test_resume_of_unknown_attempt_fails(self):
        with pytest.raises(KeyError):
            await self.orchestrator.resume("missing", "verify")

    async def test_adapter_captcha_pauses_and_retries_the_barrier(self):
        self.executor.errors["enroll_form"] = HumanInterventionRequired("enroll", "enroll_form", "Solve the puzzle")
        await self.orchestrator.start("att-1")

        state = await self.orchestrator.resume("att-1", "verify")

        assert state.status is AttemptStatus.PAUSED
        assert state.current_stage.id == "enroll"
        assert state.paused_barrier == "enroll_form"
        assert self.notifier.requests[-1].reason == "Solve the puzzle"

        state = await self.orchestrator.resume("att-1", "enroll")

        assert state.status is AttemptStatus.COMPLETED
        assert self.executor.executed.count(("enroll", "enroll_form")) == 2

    async def test_missing_approval_pauses(self):
        self.executor.errors["intake_form"] = ApprovalRequired("sess-1", "submit_form")

        state = await self.orchestrator.start("att-1")

        assert state.status is AttemptStatus.PAUSED
        assert state.current_stage.id == "intake"
        assert state.resume_barrier_index == 0

    async def test_configured_intervention_barrier_pauses(self):
        orchestrator = self._orchestrator(
            config=WorkflowConfig(stage_delay_seconds=0, intervention_barriers=["intake_form"]),
        )

        state = await orchestrator.start("att-1")
        assert state.paused_barrier == "intake_form"
        assert state.stages[0].requires_intervention

        state = await orchestrator.resume("att-1", "intake")
        assert state.current_stage.id == "verify"
        assert ("intake", "intake_form") not in self.executor.executed

    async def test_queue_position_is_saved_with_next_checkpoint(self):
        await self.orchestrator.start("att-1")

        self.orchestrator.report_queue_position("att-1", 7)
        await self.orchestrator.resume("att-1", "verify")

        assert self.store.checkpoints["att-1"].metadata.queue_position == 7

    async def test_queue_position_for_unknown_attempt(self):
        with pytest.raises(KeyError):
            self.orchestrator.report_queue_position("missing", 3)


class TestStageFailure:
    """A failing barrier fails its stage and halts the attempt."""

    def setup_method(self):
        self.store = MemoryCheckpointStore()
        self.notifier = RecordingNotifier()

    def _orchestrator(self, executor, audit=None):
        async def sleep(seconds):
            return None

        return WorkflowOrchestrator(
            store=self.store,
            executor=executor,
            notifier=self.notifier,
            audit=audit,
            pipeline=PIPELINE,
            sleep=sleep,
        )

    async def test_adapter_failure_fails_stage_with_reason(self, audit):
        executor = ScriptedExecutor({
            "profile_form": AdapterFailure("jackrabbit_class", "precheck", "Missing required information: child_dob"),
        })

        state = await self._orchestrator(executor, audit).start("att-1")

        assert state.status is AttemptStatus.FAILED
        assert state.failure_reason == "Missing required information: child_dob"
        assert state.error_code == "ADAPTER_FAILURE"
        assert state.stages[1].status is StageStatus.FAILED
        assert state.stages[1].error == "Missing required information: child_dob"
        assert [s.status for s in state.stages[2:]] == [StageStatus.PENDING] * 3
        assert ("verify", "potential_captcha") not in executor.executed
        assert executor.hooks == [("finish", "att-1")]
        assert self.notifier.requests == []

        event = audit.of_type(AuditEventType.STAGE_FAILED)[0]
        assert event.payload["barrier"] == "profile_form"

    async def test_failure_is_checkpointed(self):
        executor = ScriptedExecutor({"intake_form": AdapterFailure("skiclubpro", "reserve", "Class is full")})

        await self._orchestrator(executor).start("att-1")

        metadata = self.store.checkpoints["att-1"].metadata
        assert metadata.attempt_status == "failed"
        assert metadata.stage_status == "failed"
        assert metadata.failure_reason == "Class is full"

    async def test_unexpected_error_fails_stage(self):
        executor = ScriptedExecutor({"intake_form": RuntimeError("boom")})

        state = await self._orchestrator(executor).start("att-1")

        assert state.status is AttemptStatus.FAILED
        assert state.error_code == "UNEXPECTED_ERROR"
        assert state.failure_reason == "boom"

    async def test_failed_attempt_is_not_restarted_by_start(self):
        executor = ScriptedExecutor({"intake_form": RuntimeError("boom")})
        orchestrator = self._orchestrator(executor)
        await orchestrator.start("att-1")

        state = await orchestrator.start("att-1")

        assert state.status is AttemptStatus.FAILED
        assert executor.executed == [("intake", "intake_form")]
        assert "att-1" not in orchestrator._states


class TestCheckpointing:
    """Checkpoints are written at every stage boundary."""

    async def test_checkpoint_precedes_first_barrier(self):
        store = MemoryCheckpointStore()
        seen = []

        class ObservingExecutor(ScriptedExecutor):
            async def execute(self, state, stage, barrier):
                seen.append(len(store.writes))
                await super().execute(state, stage, barrier)

        async def sleep(seconds):
            return None

        orchestrator = WorkflowOrchestrator(store, ObservingExecutor(), RecordingNotifier(), pipeline=PIPELINE, sleep=sleep)
        await orchestrator.start("att-1")

        first = store.writes[0]
        assert seen[0] == 1
        assert first.stage_index == 0
        assert first.metadata.attempt_status == "running"
        assert first.metadata.stage_status == "in_progress"

    async def test_writes_per_stage(self):
        store = MemoryCheckpointStore()

        async def sleep(seconds):
            return None

        orchestrator = WorkflowOrchestrator(store, ScriptedExecutor(), RecordingNotifier(), pipeline=PIPELINE, sleep=sleep)
        await orchestrator.start("att-1")

        # start + complete for two stages, then start + pause for the third
        assert [w.metadata.stage_status for w in store.writes] == [
            "in_progress", "completed", "in_progress", "completed", "in_progress", "paused",
        ]


class TestRecovery:
    """Rebuilding attempts from checkpoints after a restart."""

    def setup_method(self):
        self.store = MemoryCheckpointStore()
        self.notifier = RecordingNotifier()

    def _orchestrator(self, executor):
        async def sleep(seconds):
            return None

        return WorkflowOrchestrator(self.store, executor, self.notifier, pipeline=PIPELINE, sleep=sleep)

    async def test_paused_attempt_survives_restart(self):
        await self._orchestrator(ScriptedExecutor()).start("att-1")

        restarted = self._orchestrator(ScriptedExecutor())
        state = await restarted.status("att-1")

        assert state.status is AttemptStatus.PAUSED
        assert state.total_progress == 40.0
        assert state.can_recover
        assert state.last_checkpoint_id == "stage_2"

        state = await restarted.resume("att-1", "verify")
        assert state.status is AttemptStatus.COMPLETED

    async def test_recover_reruns_failed_stage(self):
        failing = ScriptedExecutor({"profile_form": AdapterFailure("skiclubpro", "reserve", "Timed out")})
        await self._orchestrator(failing).start("att-1")

        executor = ScriptedExecutor()
        state = await self._orchestrator(executor).recover("att-1")

        assert state.status is AttemptStatus.PAUSED
        assert state.current_stage.id == "verify"
        assert state.failure_reason is None
        assert executor.executed == [("account", "account_form"), ("account", "profile_form")]

    async def test_recover_leaves_paused_attempt_alone(self):
        await self._orchestrator(ScriptedExecutor()).start("att-1")
        executor = ScriptedExecutor()

        state = await self._orchestrator(executor).recover("att-1")

        assert state.status is AttemptStatus.PAUSED
        assert executor.executed == []
        assert len(self.notifier.requests) == 1

    async def test_recover_without_checkpoint_fails(self):
        with pytest.raises(KeyError):
            await self._orchestrator(ScriptedExecutor()).recover("missing")

    async def test_stage_never_starts_before_predecessors_complete(self):
        await self.store.write(Checkpoint(
            attempt_id="att-1",
            stage_index=2,
            current_stage="verify",
            completed_stage_ids=("intake",),
            metadata=CheckpointMetadata(attempt_status="failed", stage_status="failed"),
        ))

        with pytest.raises(TransitionError):
            await self._orchestrator(ScriptedExecutor()).recover("att-1")

    async def test_status_of_unknown_attempt_is_none(self):
        assert await self._orchestrator(ScriptedExecutor()).status("missing") is None
