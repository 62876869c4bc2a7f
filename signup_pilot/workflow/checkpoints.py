"""Durable checkpoints for registration attempts.

A checkpoint is written before a stage starts and after it completes, fails
or pauses. It captures only what is needed to rebuild the attempt, so a
restore followed by a save with no progress writes an identical checkpoint.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from signup_pilot.errors import CheckpointError
from signup_pilot.utils.atomic import AtomicWriteError, atomic_write_json, read_json
from signup_pilot.utils.logging import get_logger
from signup_pilot.workflow.states import AttemptStatus, Stage, StageStatus, WorkflowState

logger = get_logger("workflow.checkpoints")

ATTEMPT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def step_name(stage_index: int) -> str:
    """Checkpoint reference for a stage index."""
    return f"stage_{stage_index}"


@dataclass(frozen=True)
class CheckpointMetadata:
    """Progress figures and resume details stored with a checkpoint."""

    total_progress: float = 0.0
    estimated_time_remaining: int = 0
    queue_position: Optional[int] = None
    attempt_status: str = AttemptStatus.PENDING.value
    stage_status: str = StageStatus.PENDING.value
    paused_barrier: Optional[str] = None
    resume_barrier_index: int = 0
    failure_reason: Optional[str] = None
    error_code: Optional[str] = None
    results: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalProgress": self.total_progress,
            "estimatedTimeRemaining": self.estimated_time_remaining,
            "queuePosition": self.queue_position,
            "attemptStatus": self.attempt_status,
            "stageStatus": self.stage_status,
            "pausedBarrier": self.paused_barrier,
            "resumeBarrierIndex": self.resume_barrier_index,
            "failureReason": self.failure_reason,
            "errorCode": self.error_code,
            "results": self.results,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CheckpointMetadata:
        return cls(
            total_progress=float(data.get("totalProgress", 0.0)),
            estimated_time_remaining=int(data.get("estimatedTimeRemaining", 0)),
            queue_position=data.get("queuePosition"),
            attempt_status=data.get("attemptStatus", AttemptStatus.PENDING.value),
            stage_status=data.get("stageStatus", StageStatus.PENDING.value),
            paused_barrier=data.get("pausedBarrier"),
            resume_barrier_index=int(data.get("resumeBarrierIndex", 0)),
            failure_reason=data.get("failureReason"),
            error_code=data.get("errorCode"),
            results=data.get("results") or {},
        )


@dataclass(frozen=True)
class Checkpoint:
    """Durable snapshot of an attempt's progress."""

    attempt_id: str
    stage_index: int
    current_stage: Optional[str]
    completed_stage_ids: tuple[str, ...]
    metadata: CheckpointMetadata
    saved_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def step_name(self) -> str:
        return step_name(self.stage_index)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "attemptId": self.attempt_id,
            "stepName": self.step_name,
            "currentStageIndex": self.stage_index,
            "currentStage": self.current_stage,
            "completedStages": list(self.completed_stage_ids),
            "metadata": self.metadata.to_dict(),
            "savedAt": self.saved_at.isoformat() if self.saved_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        """Create from dictionary."""
        saved_at = data.get("savedAt")
        return cls(
            attempt_id=data["attemptId"],
            stage_index=int(data["currentStageIndex"]),
            current_stage=data.get("currentStage"),
            completed_stage_ids=tuple(data.get("completedStages", [])),
            metadata=CheckpointMetadata.from_dict(data.get("metadata", {})),
            saved_at=datetime.fromisoformat(saved_at) if saved_at else None,
        )


def checkpoint_from_state(state: WorkflowState) -> Checkpoint:
    """Snapshot an attempt."""
    current = state.current_stage
    return Checkpoint(
        attempt_id=state.attempt_id,
        stage_index=state.current_stage_index,
        current_stage=current.id if current else None,
        completed_stage_ids=tuple(state.completed_stage_ids),
        metadata=CheckpointMetadata(
            total_progress=state.total_progress,
            estimated_time_remaining=state.estimated_time_remaining,
            queue_position=state.queue_position,
            attempt_status=state.status.value,
            stage_status=current.status.value if current else StageStatus.PENDING.value,
            paused_barrier=state.paused_barrier,
            resume_barrier_index=state.resume_barrier_index,
            failure_reason=state.failure_reason,
            error_code=state.error_code,
            results=dict(state.results),
        ),
    )


def state_from_checkpoint(checkpoint: Checkpoint, stages: Sequence[Stage]) -> WorkflowState:
    """
    Rebuild an attempt from its checkpoint onto freshly built stages.

    Progress figures are taken from the checkpoint as stored, never
    recomputed, so a restore introduces no drift.
    """
    completed = set(checkpoint.completed_stage_ids)
    stage_list = list(stages)
    known = {stage.id for stage in stage_list}
    unknown = completed - known
    if unknown:
        logger.warning(
            "checkpoint_unknown_stages",
            attempt_id=checkpoint.attempt_id,
            stages=sorted(unknown),
        )

    for stage in stage_list:
        if stage.id in completed:
            stage.status = StageStatus.COMPLETED

    meta = checkpoint.metadata
    if 0 <= checkpoint.stage_index < len(stage_list):
        current = stage_list[checkpoint.stage_index]
        current.status = StageStatus(meta.stage_status)
        if current.status == StageStatus.FAILED:
            current.error = meta.failure_reason

    return WorkflowState(
        attempt_id=checkpoint.attempt_id,
        stages=stage_list,
        current_stage_index=checkpoint.stage_index,
        status=AttemptStatus(meta.attempt_status),
        total_progress=meta.total_progress,
        estimated_time_remaining=meta.estimated_time_remaining,
        queue_position=meta.queue_position,
        last_checkpoint_id=checkpoint.step_name,
        can_recover=True,
        paused_barrier=meta.paused_barrier,
        resume_barrier_index=meta.resume_barrier_index,
        failure_reason=meta.failure_reason,
        error_code=meta.error_code,
        results=dict(meta.results),
    )


class CheckpointStore(ABC):
    """Base class for checkpoint persistence."""

    async def save_checkpoint(
        self,
        attempt_id: str,
        stage_index: int,
        completed_stage_ids: Sequence[str],
        metadata: CheckpointMetadata,
        current_stage: Optional[str] = None,
    ) -> Checkpoint:
        """
        Persist a checkpoint, replacing the attempt's previous one.

        Args:
            attempt_id: Attempt identifier
            stage_index: Index of the current stage
            completed_stage_ids: Ids of completed stages, in pipeline order
            metadata: Progress figures and resume details
            current_stage: Id of the current stage

        Returns:
            The stored checkpoint

        Raises:
            CheckpointError: If the checkpoint could not be written
        """
        checkpoint = Checkpoint(
            attempt_id=attempt_id,
            stage_index=stage_index,
            current_stage=current_stage,
            completed_stage_ids=tuple(completed_stage_ids),
            metadata=metadata,
            saved_at=datetime.now(timezone.utc),
        )
        await self.write(checkpoint)
        return checkpoint

    @abstractmethod
    async def write(self, checkpoint: Checkpoint) -> None:
        """Store a checkpoint."""
        ...

    @abstractmethod
    async def restore_checkpoint(self, attempt_id: str) -> Optional[Checkpoint]:
        """
        Latest checkpoint for an attempt.

        Returns:
            The checkpoint, or None if the attempt has none

        Raises:
            CheckpointError: If a stored checkpoint cannot be read
        """
        ...

    @abstractmethod
    async def list_attempts(self) -> list[str]:
        """Ids of all attempts with a checkpoint."""
        ...


class FileCheckpointStore(CheckpointStore):
    """One JSON file per attempt, written atomically."""

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)

    def _path(self, attempt_id: str) -> Path:
        if not ATTEMPT_ID_PATTERN.match(attempt_id):
            raise CheckpointError(attempt_id, f"Invalid attempt id: {attempt_id!r}")
        return self.directory / f"{attempt_id}.json"

    async def write(self, checkpoint: Checkpoint) -> None:
        path = self._path(checkpoint.attempt_id)
        try:
            atomic_write_json(path, checkpoint.to_dict())
        except AtomicWriteError as e:
            raise CheckpointError(checkpoint.attempt_id, str(e)) from e

        logger.debug(
            "checkpoint_saved",
            attempt_id=checkpoint.attempt_id,
            step=checkpoint.step_name,
            path=str(path),
        )

    async def restore_checkpoint(self, attempt_id: str) -> Optional[Checkpoint]:
        path = self._path(attempt_id)
        try:
            data = read_json(path)
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(attempt_id, f"Unreadable checkpoint {path}: {e}") from e

        if data is None:
            logger.debug("no_existing_checkpoint", attempt_id=attempt_id)
            return None

        try:
            return Checkpoint.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise CheckpointError(attempt_id, f"Corrupt checkpoint {path}: {e}") from e

    async def list_attempts(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))


class MemoryCheckpointStore(CheckpointStore):
    """In-process store, used by tests and dry runs."""

    def __init__(self) -> None:
        self.checkpoints: dict[str, Checkpoint] = {}
        self.writes: list[Checkpoint] = []

    async def write(self, checkpoint: Checkpoint) -> None:
        self.checkpoints[checkpoint.attempt_id] = checkpoint
        self.writes.append(checkpoint)

    async def restore_checkpoint(self, attempt_id: str) -> Optional[Checkpoint]:
        return self.checkpoints.get(attempt_id)

    async def list_attempts(self) -> list[str]:
        return sorted(self.checkpoints)
