"""Lifecycle transition tables for tasks and convoys.

Statuses are closed enums; every legal edge is listed here and anything
else is rejected with InvalidTransitionError.
"""

from __future__ import annotations

from overseer.core.exceptions import InvalidTransitionError
from overseer.core.models import ConvoyStatus, TaskStatus

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset(
        {TaskStatus.ASSIGNED, TaskStatus.BLOCKED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.BLOCKED: frozenset(
        {TaskStatus.PENDING, TaskStatus.ASSIGNED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.ASSIGNED: frozenset(
        {
            TaskStatus.IN_PROGRESS,
            TaskStatus.PENDING,
            TaskStatus.BLOCKED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    # Retry only
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.CANCELLED: frozenset(),
}

CONVOY_TRANSITIONS: dict[ConvoyStatus, frozenset[ConvoyStatus]] = {
    ConvoyStatus.PENDING: frozenset(
        {
            ConvoyStatus.BLOCKED,
            ConvoyStatus.IN_PROGRESS,
            ConvoyStatus.COMPLETED,
            ConvoyStatus.FAILED,
            ConvoyStatus.CANCELLED,
        }
    ),
    ConvoyStatus.BLOCKED: frozenset(
        {
            ConvoyStatus.PENDING,
            ConvoyStatus.IN_PROGRESS,
            ConvoyStatus.FAILED,
            ConvoyStatus.CANCELLED,
        }
    ),
    ConvoyStatus.IN_PROGRESS: frozenset(
        {ConvoyStatus.COMPLETED, ConvoyStatus.FAILED, ConvoyStatus.CANCELLED}
    ),
    ConvoyStatus.COMPLETED: frozenset(),
    ConvoyStatus.FAILED: frozenset({ConvoyStatus.PENDING}),
    ConvoyStatus.CANCELLED: frozenset(),
}

# Convoys whose membership may still change.
OPEN_CONVOY_STATUSES = frozenset(
    {ConvoyStatus.PENDING, ConvoyStatus.BLOCKED, ConvoyStatus.IN_PROGRESS}
)


def can_transition_task(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS.get(current, frozenset())


def can_transition_convoy(current: ConvoyStatus, target: ConvoyStatus) -> bool:
    return target in CONVOY_TRANSITIONS.get(current, frozenset())


def require_task_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    if not can_transition_task(current, target):
        raise InvalidTransitionError(task_id, current.value, target.value)


def require_convoy_transition(
    convoy_id: str, current: ConvoyStatus, target: ConvoyStatus
) -> None:
    if not can_transition_convoy(current, target):
        raise InvalidTransitionError(convoy_id, current.value, target.value)
