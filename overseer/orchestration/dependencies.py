"""Dependency resolution shared by tasks and convoys.

Everything here is a pure function over snapshots; callers hold the
relevant store locks while they gather the inputs.
"""

from __future__ import annotations

from typing import Callable, Hashable, Iterable, Mapping, Optional, TypeVar

from overseer.core.models import Convoy, ConvoyProgress, ConvoyStatus, Task, TaskStatus

StatusT = TypeVar("StatusT", bound=Hashable)


def unsatisfied_prerequisites(
    prerequisite_ids: Iterable[str],
    status_of: Callable[[str], Optional[StatusT]],
    done: StatusT,
) -> list[str]:
    """Return the prerequisites that are not in the ``done`` state.

    Unknown identifiers (``status_of`` returns None) count as unsatisfied.
    """
    return [pid for pid in prerequisite_ids if status_of(pid) != done]


def task_prerequisites_met(task: Task, tasks: Mapping[str, Task]) -> bool:
    return not unsatisfied_prerequisites(
        task.dependencies,
        lambda tid: tasks[tid].status if tid in tasks else None,
        TaskStatus.COMPLETED,
    )


def convoy_prerequisites_met(convoy: Convoy, convoys: Mapping[str, Convoy]) -> bool:
    return not unsatisfied_prerequisites(
        convoy.dependencies,
        lambda cid: convoys[cid].status if cid in convoys else None,
        ConvoyStatus.COMPLETED,
    )


def convoy_progress(task_ids: Iterable[str], tasks: Mapping[str, Task]) -> ConvoyProgress:
    """Count member tasks per status. Members missing from ``tasks`` are skipped."""
    counts = {status: 0 for status in TaskStatus}
    total = 0
    for tid in task_ids:
        task = tasks.get(tid)
        if task is None:
            continue
        counts[task.status] += 1
        total += 1
    return ConvoyProgress(
        total_tasks=total,
        pending_tasks=counts[TaskStatus.PENDING],
        assigned_tasks=counts[TaskStatus.ASSIGNED],
        in_progress_tasks=counts[TaskStatus.IN_PROGRESS],
        completed_tasks=counts[TaskStatus.COMPLETED],
        failed_tasks=counts[TaskStatus.FAILED],
        blocked_tasks=counts[TaskStatus.BLOCKED],
        cancelled_tasks=counts[TaskStatus.CANCELLED],
    )


def next_ready_convoy(
    convoys: Iterable[Convoy],
    by_id: Mapping[str, Convoy],
    milestone: Optional[str] = None,
) -> Optional[Convoy]:
    """Highest-priority Pending convoy whose prerequisites are all Completed.

    Ties go to the convoy created first.
    """
    ready = [
        c for c in convoys
        if c.status == ConvoyStatus.PENDING
        and (milestone is None or c.milestone == milestone)
        and convoy_prerequisites_met(c, by_id)
    ]
    if not ready:
        return None
    return min(ready, key=lambda c: (-c.priority, c.sequence))


def would_create_cycle(
    node_id: str,
    new_prerequisite: str,
    edges: Mapping[str, Iterable[str]],
) -> bool:
    """True if making ``node_id`` depend on ``new_prerequisite`` closes a cycle.

    ``edges`` maps each id to its prerequisite ids.
    """
    if node_id == new_prerequisite:
        return True
    stack = [new_prerequisite]
    seen: set[str] = set()
    while stack:
        current = stack.pop()
        if current == node_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(edges.get(current, ()))
    return False
