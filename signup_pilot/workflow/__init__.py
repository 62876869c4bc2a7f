"""Workflow orchestration for multi-stage registration attempts."""

from signup_pilot.workflow.barriers import (
    AttemptBinding,
    BarrierExecutor,
    NoopBarrierExecutor,
    ProviderBarrierExecutor,
)
from signup_pilot.workflow.checkpoints import (
    Checkpoint,
    CheckpointMetadata,
    CheckpointStore,
    FileCheckpointStore,
    MemoryCheckpointStore,
    checkpoint_from_state,
    state_from_checkpoint,
    step_name,
)
from signup_pilot.workflow.notifications import (
    HumanNotifier,
    InterventionRequest,
    LoggingNotifier,
    WebhookNotifier,
    create_notifier,
)
from signup_pilot.workflow.orchestrator import WorkflowOrchestrator
from signup_pilot.workflow.stages import (
    DEFAULT_PIPELINE,
    StageDefinition,
    build_stages,
    is_human_gated,
    progress_after,
    remaining_minutes,
)
from signup_pilot.workflow.states import (
    STAGE_TRANSITIONS,
    AttemptStatus,
    Stage,
    StageStatus,
    WorkflowState,
)

__all__ = [
    # Orchestration
    "WorkflowOrchestrator",
    # States
    "AttemptStatus",
    "Stage",
    "StageStatus",
    "STAGE_TRANSITIONS",
    "WorkflowState",
    # Pipeline
    "DEFAULT_PIPELINE",
    "StageDefinition",
    "build_stages",
    "is_human_gated",
    "progress_after",
    "remaining_minutes",
    # Checkpoints
    "Checkpoint",
    "CheckpointMetadata",
    "CheckpointStore",
    "FileCheckpointStore",
    "MemoryCheckpointStore",
    "checkpoint_from_state",
    "state_from_checkpoint",
    "step_name",
    # Barriers
    "AttemptBinding",
    "BarrierExecutor",
    "NoopBarrierExecutor",
    "ProviderBarrierExecutor",
    # Notifications
    "HumanNotifier",
    "InterventionRequest",
    "LoggingNotifier",
    "WebhookNotifier",
    "create_notifier",
]
