"""State definitions for multi-stage registration attempts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from signup_pilot.errors import TransitionError


class StageStatus(Enum):
    """Lifecycle of a single workflow stage."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        """Check if this is a terminal state."""
        return self in (StageStatus.COMPLETED, StageStatus.FAILED)


# Valid stage transitions
STAGE_TRANSITIONS: dict[StageStatus, set[StageStatus]] = {
    StageStatus.PENDING: {StageStatus.IN_PROGRESS},
    StageStatus.IN_PROGRESS: {
        StageStatus.COMPLETED,
        StageStatus.FAILED,
        StageStatus.PAUSED,
    },
    StageStatus.PAUSED: {StageStatus.IN_PROGRESS},
    # Terminal states have no transitions
    StageStatus.COMPLETED: set(),
    StageStatus.FAILED: set(),
}


class AttemptStatus(Enum):
    """Overall status of a registration attempt."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    FAILED = "failed"
    COMPLETED = "completed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Stage:
    """One named step of a registration attempt."""

    id: str
    name: str
    barriers: tuple[str, ...]
    estimated_minutes: int
    requires_intervention: bool = False
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def can_transition_to(self, new_status: StageStatus) -> bool:
        """Check if transition to new_status is valid."""
        return new_status in STAGE_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: StageStatus) -> None:
        """
        Move the stage to a new status.

        Args:
            new_status: Target status

        Raises:
            TransitionError: If the transition is not allowed
        """
        if not self.can_transition_to(new_status):
            raise TransitionError(self.status.value, new_status.value, subject=f"stage {self.id}")

        if new_status == StageStatus.IN_PROGRESS and self.started_at is None:
            self.started_at = _utcnow()
        elif new_status.is_terminal():
            self.completed_at = _utcnow()

        self.status = new_status

    @property
    def actual_duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "barriers": list(self.barriers),
            "estimated_minutes": self.estimated_minutes,
            "requires_intervention": self.requires_intervention,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "actual_duration_seconds": self.actual_duration_seconds,
            "error": self.error,
        }


@dataclass
class WorkflowState:
    """
    Complete in-memory state of one registration attempt.

    ``current_stage_index`` always points at the stage being (or about to be)
    executed. ``resume_barrier_index`` is where barrier processing picks up
    inside that stage after a pause.
    """

    attempt_id: str
    stages: list[Stage]
    current_stage_index: int = 0
    status: AttemptStatus = AttemptStatus.PENDING
    total_progress: float = 0.0
    estimated_time_remaining: int = 0
    queue_position: Optional[int] = None
    last_checkpoint_id: Optional[str] = None
    can_recover: bool = False
    paused_barrier: Optional[str] = None
    resume_barrier_index: int = 0
    failure_reason: Optional[str] = None
    error_code: Optional[str] = None
    results: dict[str, Any] = field(default_factory=dict)

    @property
    def current_stage(self) -> Optional[Stage]:
        if 0 <= self.current_stage_index < len(self.stages):
            return self.stages[self.current_stage_index]
        return None

    @property
    def completed_stage_ids(self) -> list[str]:
        return [s.id for s in self.stages if s.status == StageStatus.COMPLETED]

    def stage_by_id(self, stage_id: str) -> Optional[Stage]:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def index_of(self, stage_id: str) -> int:
        for index, stage in enumerate(self.stages):
            if stage.id == stage_id:
                return index
        raise KeyError(f"Unknown stage: {stage_id}")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for status reports."""
        current = self.current_stage
        return {
            "attempt_id": self.attempt_id,
            "status": self.status.value,
            "current_stage": current.id if current else None,
            "current_stage_index": self.current_stage_index,
            "total_progress": round(self.total_progress, 2),
            "estimated_time_remaining": self.estimated_time_remaining,
            "queue_position": self.queue_position,
            "last_checkpoint_id": self.last_checkpoint_id,
            "can_recover": self.can_recover,
            "paused_barrier": self.paused_barrier,
            "failure_reason": self.failure_reason,
            "error_code": self.error_code,
            "completed_stages": self.completed_stage_ids,
            "stages": [stage.to_dict() for stage in self.stages],
            "results": self.results,
        }
