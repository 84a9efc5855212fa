"""Episode pipeline step transition rules."""

from collections.abc import Mapping

from dubtrack.errors import ApiError, precondition_failed
from dubtrack.schemas.episode import PIPELINE_STEPS, StepStatus

_ALLOWED_TRANSITIONS: dict[StepStatus, set[StepStatus]] = {
    StepStatus.PENDING: {StepStatus.PROCESSING},
    StepStatus.PROCESSING: {StepStatus.COMPLETED, StepStatus.ERROR},
    StepStatus.ERROR: {StepStatus.PROCESSING, StepStatus.PENDING},
    StepStatus.COMPLETED: {StepStatus.PENDING},
}


def allowed_next_statuses(status: StepStatus) -> list[StepStatus]:
    """Return deterministically ordered allowed successors for a step status."""
    return sorted(_ALLOWED_TRANSITIONS.get(status, set()), key=lambda s: s.value)


def ensure_step_ordering(steps: Mapping[int, StepStatus], step: int) -> None:
    """Reject starting ``step`` while the step before it has not completed."""
    if step not in PIPELINE_STEPS:
        raise ApiError(
            status_code=400,
            code="INVALID_INPUT",
            message="Unknown pipeline step",
            details={"step": step, "known_steps": list(PIPELINE_STEPS)},
        )
    if step == PIPELINE_STEPS[0]:
        return

    previous = step - 1
    previous_status = steps.get(previous, StepStatus.PENDING)
    if previous_status is not StepStatus.COMPLETED:
        raise precondition_failed(
            f"Step {step} requires step {previous} to be completed",
            details={
                "step": step,
                "required_step": previous,
                "required_status": StepStatus.COMPLETED,
                "current_status": previous_status,
            },
        )


def ensure_step_transition(steps: Mapping[int, StepStatus], step: int, new_status: StepStatus) -> None:
    """Validate a step status change, including the ordering rule when a step starts."""
    if new_status is StepStatus.PROCESSING:
        ensure_step_ordering(steps, step)

    old_status = steps.get(step, StepStatus.PENDING)
    if new_status not in _ALLOWED_TRANSITIONS.get(old_status, set()):
        raise ApiError(
            status_code=409,
            code="FSM_TRANSITION_INVALID",
            message="Invalid step status transition",
            details={
                "step": step,
                "current_status": old_status,
                "attempted_status": new_status,
                "allowed_next_statuses": allowed_next_statuses(old_status),
            },
        )
