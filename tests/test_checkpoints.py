"""Tests for checkpoint snapshots and stores."""

import json

import pytest

from conftest import RecordingNotifier, ScriptedExecutor

from signup_pilot.errors import CheckpointError
from signup_pilot.workflow import (
    AttemptStatus,
    Checkpoint,
    CheckpointMetadata,
    FileCheckpointStore,
    MemoryCheckpointStore,
    StageDefinition,
    StageStatus,
    WorkflowOrchestrator,
    build_stages,
    checkpoint_from_state,
    state_from_checkpoint,
)

PIPELINE = (
    StageDefinition("intake", "Intake", ("intake_form",), 1),
    StageDefinition("verify", "Verify", ("potential_captcha",), 2),
    StageDefinition("receipt", "Receipt", ("receipt_page",), 1),
)


async def no_sleep(seconds):
    return None


def orchestrator_for(store, executor=None):
    return WorkflowOrchestrator(
        store=store,
        executor=executor or ScriptedExecutor(),
        notifier=RecordingNotifier(),
        pipeline=PIPELINE,
        sleep=no_sleep,
    )


class TestSnapshots:
    """Converting between attempt state and checkpoints."""

    async def test_restore_then_save_is_identical(self):
        store = MemoryCheckpointStore()
        state = await orchestrator_for(store).start("att-1")
        state.results["candidate"] = {"id": "class-9", "title": "Ballet I"}
        checkpoint = checkpoint_from_state(state)

        restored = state_from_checkpoint(checkpoint, build_stages(PIPELINE))

        assert checkpoint_from_state(restored) == checkpoint

    async def test_restore_keeps_stored_progress(self):
        checkpoint = Checkpoint(
            attempt_id="att-1",
            stage_index=1,
            current_stage="verify",
            completed_stage_ids=("intake",),
            metadata=CheckpointMetadata(
                total_progress=33.33,
                estimated_time_remaining=3,
                attempt_status="paused",
                stage_status="paused",
                paused_barrier="potential_captcha",
                resume_barrier_index=1,
            ),
        )

        state = state_from_checkpoint(checkpoint, build_stages(PIPELINE))

        assert state.total_progress == 33.33
        assert state.status is AttemptStatus.PAUSED
        assert state.stages[0].status is StageStatus.COMPLETED
        assert state.stages[1].status is StageStatus.PAUSED
        assert state.stages[2].status is StageStatus.PENDING
        assert state.resume_barrier_index == 1
        assert state.last_checkpoint_id == "stage_1"

    def test_unknown_completed_stage_is_ignored(self):
        checkpoint = Checkpoint(
            attempt_id="att-1",
            stage_index=0,
            current_stage="intake",
            completed_stage_ids=("retired_stage",),
            metadata=CheckpointMetadata(),
        )

        state = state_from_checkpoint(checkpoint, build_stages(PIPELINE))

        assert state.completed_stage_ids == []

    def test_serialized_form_uses_step_names(self):
        checkpoint = Checkpoint(
            attempt_id="att-1",
            stage_index=2,
            current_stage="receipt",
            completed_stage_ids=("intake", "verify"),
            metadata=CheckpointMetadata(total_progress=66.67),
        )

        data = checkpoint.to_dict()

        assert data["stepName"] == "stage_2"
        assert data["completedStages"] == ["intake", "verify"]
        assert data["metadata"]["totalProgress"] == 66.67
        assert Checkpoint.from_dict(data) == checkpoint


class TestFileCheckpointStore:
    """One JSON file per attempt."""

    async def test_save_and_restore(self, tmp_path):
        store = FileCheckpointStore(tmp_path)

        saved = await store.save_checkpoint(
            attempt_id="att-1",
            stage_index=1,
            completed_stage_ids=["intake"],
            metadata=CheckpointMetadata(total_progress=33.33, attempt_status="running"),
            current_stage="verify",
        )
        restored = await store.restore_checkpoint("att-1")

        assert restored == saved
        assert restored.saved_at is not None
        assert json.loads((tmp_path / "att-1.json").read_text())["stepName"] == "stage_1"

    async def test_save_replaces_previous_checkpoint(self, tmp_path):
        store = FileCheckpointStore(tmp_path)

        await store.save_checkpoint("att-1", 0, [], CheckpointMetadata())
        await store.save_checkpoint("att-1", 1, ["intake"], CheckpointMetadata())

        assert (await store.restore_checkpoint("att-1")).stage_index == 1
        assert await store.list_attempts() == ["att-1"]

    async def test_missing_checkpoint_is_none(self, tmp_path):
        assert await FileCheckpointStore(tmp_path).restore_checkpoint("att-1") is None

    async def test_list_attempts_without_directory(self, tmp_path):
        assert await FileCheckpointStore(tmp_path / "nothing").list_attempts() == []

    async def test_path_traversal_is_rejected(self, tmp_path):
        with pytest.raises(CheckpointError):
            await FileCheckpointStore(tmp_path).save_checkpoint("../escape", 0, [], CheckpointMetadata())

    async def test_corrupt_file_raises(self, tmp_path):
        (tmp_path / "att-1.json").write_text("{not json")

        with pytest.raises(CheckpointError):
            await FileCheckpointStore(tmp_path).restore_checkpoint("att-1")

    async def test_incomplete_file_raises(self, tmp_path):
        (tmp_path / "att-1.json").write_text(json.dumps({"stepName": "stage_0"}))

        with pytest.raises(CheckpointError):
            await FileCheckpointStore(tmp_path).restore_checkpoint("att-1")

    async def test_attempt_resumes_from_files_after_restart(self, tmp_path):
        await orchestrator_for(FileCheckpointStore(tmp_path)).start("att-1")

        restarted = orchestrator_for(FileCheckpointStore(tmp_path))
        state = await restarted.resume("att-1", "verify")

        assert state.status is AttemptStatus.COMPLETED

    async def test_corrupt_checkpoint_starts_fresh(self, tmp_path):
        (tmp_path / "att-1.json").write_text("garbage")
        executor = ScriptedExecutor()

        state = await orchestrator_for(FileCheckpointStore(tmp_path), executor).start("att-1")

        assert state.status is AttemptStatus.PAUSED
        assert executor.executed == [("intake", "intake_form")]
