"""Default registration pipeline and progress arithmetic."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from signup_pilot.workflow.states import Stage

# Any barrier whose name contains this marker always needs a human
HUMAN_BARRIER_MARKER = "captcha"


@dataclass(frozen=True)
class StageDefinition:
    """Static description of a pipeline stage."""

    id: str
    name: str
    barriers: tuple[str, ...]
    estimated_minutes: int


DEFAULT_PIPELINE: tuple[StageDefinition, ...] = (
    StageDefinition(
        id="account_creation",
        name="Account Creation",
        barriers=("account_form", "email_verification", "potential_captcha"),
        estimated_minutes=3,
    ),
    StageDefinition(
        id="login",
        name="Login",
        barriers=("login_form", "credential_validation", "potential_captcha"),
        estimated_minutes=2,
    ),
    StageDefinition(
        id="registration",
        name="Registration",
        # Selection runs first so the form knows which session to reserve
        barriers=("session_selection", "registration_form", "queue_management", "potential_captcha"),
        estimated_minutes=5,
    ),
    StageDefinition(
        id="payment",
        name="Payment",
        barriers=("payment_form", "billing_validation", "payment_captcha"),
        estimated_minutes=4,
    ),
    StageDefinition(
        id="confirmation",
        name="Confirmation",
        barriers=("confirmation_page", "email_receipt"),
        estimated_minutes=1,
    ),
)


def is_human_gated(barrier: str, intervention_barriers: Iterable[str] = ()) -> bool:
    """
    Whether a barrier always requires a human.

    Captcha-like barriers are always gated; others only when configured.
    """
    return HUMAN_BARRIER_MARKER in barrier.lower() or barrier in set(intervention_barriers)


def build_stages(
    definitions: Sequence[StageDefinition] = DEFAULT_PIPELINE,
    intervention_barriers: Iterable[str] = (),
) -> list[Stage]:
    """Fresh pending stages for a new attempt."""
    gated = list(intervention_barriers)
    return [
        Stage(
            id=d.id,
            name=d.name,
            barriers=tuple(d.barriers),
            estimated_minutes=d.estimated_minutes,
            requires_intervention=any(is_human_gated(b, gated) for b in d.barriers),
        )
        for d in definitions
    ]


def progress_after(stage_index: int, stage_count: int) -> float:
    """Percent complete once the stage at ``stage_index`` has completed."""
    if stage_count <= 0:
        return 0.0
    return (stage_index + 1) / stage_count * 100


def remaining_minutes(stages: Sequence[Stage], after_index: Optional[int]) -> int:
    """
    Sum of estimates for stages after ``after_index``.

    ``None`` means nothing has completed yet, so every stage counts.
    """
    start = 0 if after_index is None else after_index + 1
    return sum(stage.estimated_minutes for stage in stages[start:])
