"""Per-task retry ceilings.

Counts live on the task records themselves so the orchestrator can bump
them inside the same locked step that marks a task Failed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Callable, Optional

from overseer.core.models import IterationInfo, Task
from overseer.orchestration.task_store import TaskStore

logger = logging.getLogger("overseer.safety.iteration_guard")


class IterationGuard:
    def __init__(
        self,
        tasks: TaskStore,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._tasks = tasks
        self._clock = clock or (lambda: datetime.now(UTC))

    def check_iteration_limit(self, task_id: str) -> bool:
        """True while the task may still be attempted (count < max)."""
        task = self._tasks.require(task_id)
        return task.iteration_count < task.max_iterations

    def increment_iteration(self, task_id: str) -> int:
        """Bump the counter and return the new value.

        Always increments, even past the ceiling. Crossing the ceiling is
        logged; acting on it is left to the caller.
        """
        with self._tasks.lock:
            task = self._tasks.require(task_id)
            self.bump(task)
            self._tasks.save(task)
        return task.iteration_count

    def bump(self, task: Task) -> int:
        """Increment an already-loaded task in place; the caller persists it."""
        task.iteration_count += 1
        task.last_iteration_at = self._clock()
        if task.iteration_count >= task.max_iterations:
            logger.warning(
                "Task %s reached iteration limit (%d/%d)",
                task.id, task.iteration_count, task.max_iterations,
            )
        else:
            logger.debug(
                "Task %s iteration %d/%d",
                task.id, task.iteration_count, task.max_iterations,
            )
        return task.iteration_count

    def get_iteration_info(self, task_id: str) -> IterationInfo:
        task = self._tasks.require(task_id)
        return IterationInfo(
            task_id=task.id,
            current_iteration=task.iteration_count,
            max_iterations=task.max_iterations,
            last_iteration_at=task.last_iteration_at,
        )

    def reset_iterations(self, task_id: str) -> IterationInfo:
        """Zero the counter. Callers gate this behind an approval."""
        with self._tasks.lock:
            task = self._tasks.require(task_id)
            previous = task.iteration_count
            task.iteration_count = 0
            task.last_iteration_at = None
            self._tasks.save(task)
        logger.info("Task %s iterations reset (was %d)", task_id, previous)
        return self.get_iteration_info(task_id)
