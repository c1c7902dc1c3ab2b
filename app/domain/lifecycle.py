from __future__ import annotations

from collections.abc import Iterable

from app.domain.errors import DomainInvariantError
from app.domain.models import GenerationStage, TaskStatus

ACTIVE_STATUSES: frozenset[TaskStatus] = frozenset({TaskStatus.PENDING, TaskStatus.PROCESSING})
TERMINAL_STATUSES: frozenset[TaskStatus] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

# failed is only reachable from processing; the reaper walks a stuck pending
# task through processing first.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.CANCELLED}),
    TaskStatus.PROCESSING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# Coarse executor checkpoints. Progress never decreases except on failure.
STAGE_PROGRESS: dict[GenerationStage, int] = {
    GenerationStage.QUEUED: 5,
    GenerationStage.SENDING_REQUEST: 20,
    GenerationStage.PROCESSING: 40,
    GenerationStage.EXTRACTING_RESULT: 80,
    GenerationStage.FINALIZING: 95,
    GenerationStage.COMPLETED: 100,
    GenerationStage.FAILED: 0,
}


def is_terminal(status: TaskStatus | str) -> bool:
    return TaskStatus(status) in TERMINAL_STATUSES


def ensure_transition_allowed(*, from_states: Iterable[TaskStatus], to_state: TaskStatus) -> None:
    """Reject transition requests that no writer may ever issue.

    Transition out of a terminal status is a programming error, not a lost race.
    """
    for from_state in from_states:
        if to_state not in ALLOWED_TRANSITIONS[TaskStatus(from_state)]:
            raise DomainInvariantError(f"invalid transition: {from_state} -> {to_state}")


def clamp_progress(*, current: int, proposed: int, to_state: TaskStatus | None = None) -> int:
    if to_state == TaskStatus.FAILED:
        return 0
    bounded = max(0, min(100, proposed))
    return max(current, bounded)
