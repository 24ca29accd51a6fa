"""Durable task records (``<state_dir>/tasks/<task-id>.json``)."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from overseer.core.exceptions import ConflictError, NotFoundError
from overseer.core.models import Task, TaskFilter
from overseer.storage.json_store import JsonRecordStore


class TaskStore:
    """Task persistence with a single lock guarding every read-modify-write."""

    def __init__(self, state_root: Path):
        self._records: JsonRecordStore[Task] = JsonRecordStore(
            state_root / "tasks", Task, prefix="task",
        )

    @property
    def lock(self):
        return self._records.lock

    def new_id(self) -> tuple[str, int]:
        return self._records.next_id()

    def get(self, task_id: str) -> Optional[Task]:
        return self._records.get(task_id)

    def require(self, task_id: str, expected_revision: Optional[int] = None) -> Task:
        """Fetch a task or raise NotFoundError; optionally check its revision."""
        task = self._records.get(task_id)
        if task is None:
            raise NotFoundError("task", task_id)
        if expected_revision is not None and task.revision != expected_revision:
            raise ConflictError(
                f"Task '{task_id}' is at revision {task.revision}, "
                f"expected {expected_revision}"
            )
        return task

    def all(self) -> list[Task]:
        return self._records.all()

    def snapshot(self) -> dict[str, Task]:
        with self.lock:
            return {t.id: t for t in self._records.all()}

    def insert(self, task: Task) -> Task:
        return self._records.put(task)

    def save(self, task: Task) -> Task:
        """Persist a mutated task, bumping its revision."""
        with self.lock:
            task.revision += 1
            return self._records.put(task)

    def query(self, task_filter: TaskFilter) -> list[Task]:
        tasks = [t for t in self.all() if _matches(t, task_filter)]
        tasks.sort(key=lambda t: (-t.priority, t.sequence))
        end = None if task_filter.limit is None else task_filter.offset + task_filter.limit
        return tasks[task_filter.offset:end]


def _matches(task: Task, f: TaskFilter) -> bool:
    if f.status is not None and task.status != f.status:
        return False
    if f.worker_class is not None and task.assigned_worker_class != f.worker_class:
        return False
    if f.convoy_id is not None and task.convoy_id != f.convoy_id:
        return False
    if f.milestone is not None and task.milestone != f.milestone:
        return False
    if f.tags and not all(tag in task.tags for tag in f.tags):
        return False
    if not f.include_completed and task.is_terminal:
        return False
    return True
