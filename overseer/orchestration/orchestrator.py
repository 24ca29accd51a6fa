"""Task and convoy lifecycle management.

Every state change goes through the transition tables in
``overseer.core.state_machine`` and is persisted before the call returns.
Operations that touch both stores take the convoy lock before the task
lock, never the other way round.
"""

from __future__ import annotations

import contextlib
import logging
from datetime import UTC, datetime
from typing import Callable, Iterator, Optional, Union

from overseer.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    PreconditionFailedError,
)
from overseer.core.models import (
    Convoy,
    ConvoyConfig,
    ConvoyFilter,
    ConvoyStatus,
    ConvoyTaskSummary,
    FailureOutcome,
    Task,
    TaskCompletionResult,
    TaskConfig,
    TaskFilter,
    TaskHistoryEntry,
    TaskStatus,
    WorkerClass,
)
from overseer.core.state_machine import (
    OPEN_CONVOY_STATUSES,
    require_convoy_transition,
    require_task_transition,
)
from overseer.orchestration import dependencies
from overseer.orchestration.convoy_store import ConvoyStore
from overseer.orchestration.task_store import TaskStore
from overseer.safety.iteration_guard import IterationGuard

logger = logging.getLogger("overseer.orchestration.orchestrator")

# Member statuses that count as "work has started" for convoy refresh
_STARTED = {TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED}


class Orchestrator:
    """Creates, assigns and tracks tasks and the convoys that group them."""

    def __init__(
        self,
        tasks: TaskStore,
        convoys: ConvoyStore,
        iterations: IterationGuard,
        default_max_iterations: int = 50,
        max_iterations_ceiling: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.tasks = tasks
        self.convoys = convoys
        self.iterations = iterations
        self.default_max_iterations = default_max_iterations
        self.max_iterations_ceiling = max_iterations_ceiling
        self._clock = clock or (lambda: datetime.now(UTC))

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        with self.convoys.lock, self.tasks.lock:
            yield

    # ------------------------------------------------------------------
    # Helpers (caller holds the locks)
    # ------------------------------------------------------------------

    def _move(
        self,
        task: Task,
        target: TaskStatus,
        message: str = "",
        worker_class: Optional[WorkerClass] = None,
    ) -> None:
        require_task_transition(task.id, task.status, target)
        task.history.append(TaskHistoryEntry(
            timestamp=self._clock(),
            from_status=task.status,
            to_status=target,
            worker_class=worker_class or task.assigned_worker_class,
            message=message,
        ))
        logger.info("Task %s: %s -> %s%s", task.id, task.status.value, target.value,
                    f" ({message})" if message else "")
        task.status = target

    def _unsatisfied(self, task: Task) -> list[str]:
        return dependencies.unsatisfied_prerequisites(
            task.dependencies,
            lambda tid: getattr(self.tasks.get(tid), "status", None),
            TaskStatus.COMPLETED,
        )

    def _unsatisfied_convoy(self, convoy: Convoy) -> list[str]:
        return dependencies.unsatisfied_prerequisites(
            convoy.dependencies,
            lambda cid: getattr(self.convoys.get(cid), "status", None),
            ConvoyStatus.COMPLETED,
        )

    def _with_progress(self, convoy: Convoy) -> Convoy:
        convoy.progress = dependencies.convoy_progress(convoy.task_ids, self.tasks.snapshot())
        return convoy

    def _set_convoy_status(self, convoy: Convoy, target: ConvoyStatus, message: str = "") -> None:
        require_convoy_transition(convoy.id, convoy.status, target)
        logger.info("Convoy %s: %s -> %s%s", convoy.id, convoy.status.value, target.value,
                    f" ({message})" if message else "")
        convoy.status = target
        if target == ConvoyStatus.IN_PROGRESS and convoy.started_at is None:
            convoy.started_at = self._clock()

    def _refresh_convoy(self, convoy_id: Optional[str]) -> Optional[Convoy]:
        """Re-derive a convoy's status from its prerequisites and members."""
        if not convoy_id:
            return None
        convoy = self.convoys.get(convoy_id)
        if convoy is None or convoy.status not in OPEN_CONVOY_STATUSES:
            return convoy

        original = convoy.status
        if convoy.status == ConvoyStatus.BLOCKED and not self._unsatisfied_convoy(convoy):
            self._set_convoy_status(convoy, ConvoyStatus.PENDING, "prerequisites completed")

        if convoy.status == ConvoyStatus.PENDING:
            members = [self.tasks.get(tid) for tid in convoy.task_ids]
            if any(t is not None and t.status in _STARTED for t in members):
                self._set_convoy_status(convoy, ConvoyStatus.IN_PROGRESS, "member task assigned")

        if convoy.status != original:
            convoy = self.convoys.save(convoy)
        return convoy

    def _unblock_dependent_tasks(self, completed_id: str) -> list[str]:
        unblocked = []
        for task in self.tasks.all():
            if task.status != TaskStatus.BLOCKED or completed_id not in task.dependencies:
                continue
            if self._unsatisfied(task):
                continue
            self._move(task, TaskStatus.PENDING, f"prerequisite {completed_id} completed")
            self.tasks.save(task)
            unblocked.append(task.id)
        return unblocked

    def _unblock_dependent_convoys(self, completed_id: str) -> list[str]:
        unblocked = []
        for convoy in self.convoys.all():
            if convoy.status == ConvoyStatus.BLOCKED and completed_id in convoy.dependencies:
                refreshed = self._refresh_convoy(convoy.id)
                if refreshed is not None and refreshed.status != ConvoyStatus.BLOCKED:
                    unblocked.append(convoy.id)
        return unblocked

    def _require_open_convoy(self, convoy: Convoy) -> None:
        if convoy.status not in OPEN_CONVOY_STATUSES:
            raise InvalidTransitionError(
                convoy.id,
                convoy.status.value,
                convoy.status.value,
                message=f"Convoy '{convoy.id}' is {convoy.status.value}; membership is closed",
            )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    def create_task(self, config: TaskConfig) -> Task:
        max_iterations = config.max_iterations or self.default_max_iterations
        if self.max_iterations_ceiling is not None and max_iterations > self.max_iterations_ceiling:
            logger.warning(
                "Task '%s' requested %d iterations; capped at %d",
                config.name, max_iterations, self.max_iterations_ceiling,
            )
            max_iterations = self.max_iterations_ceiling

        with self._locked():
            convoy = None
            if config.convoy_id:
                convoy = self.convoys.require(config.convoy_id)
                self._require_open_convoy(convoy)

            task_id, sequence = self.tasks.new_id()
            now = self._clock()
            task = Task(
                id=task_id,
                sequence=sequence,
                name=config.name,
                description=config.description,
                milestone=config.milestone,
                dependencies=list(config.dependencies),
                priority=config.priority,
                deliverable=config.deliverable,
                success_criteria=list(config.success_criteria),
                specification=dict(config.specification),
                tags=list(config.tags),
                estimated_minutes=config.estimated_minutes,
                max_iterations=max_iterations,
                convoy_id=config.convoy_id,
                created_at=now,
                history=[TaskHistoryEntry(timestamp=now, to_status=TaskStatus.PENDING, message="created")],
            )
            logger.info("Task created: %s '%s'", task.id, task.name)

            waiting_on = self._unsatisfied(task)
            if waiting_on:
                self._move(task, TaskStatus.BLOCKED, f"waiting on {', '.join(waiting_on)}")
            task = self.tasks.insert(task)

            if convoy is not None:
                convoy.task_ids.append(task.id)
                self.convoys.save(convoy)
                self._refresh_convoy(convoy.id)
        return task

    def assign_task(
        self,
        task_id: str,
        worker_class: Union[WorkerClass, str],
        expected_revision: Optional[int] = None,
    ) -> Task:
        worker_class = WorkerClass(worker_class)
        with self._locked():
            task = self.tasks.require(task_id, expected_revision)
            require_task_transition(task.id, task.status, TaskStatus.ASSIGNED)
            if worker_class == WorkerClass.MAYOR:
                raise PreconditionFailedError(
                    f"Worker class '{worker_class.value}' coordinates and cannot be assigned tasks"
                )
            waiting_on = self._unsatisfied(task)
            if waiting_on:
                raise PreconditionFailedError(
                    f"Task '{task_id}' has unsatisfied prerequisites: {', '.join(waiting_on)}"
                )

            self._move(task, TaskStatus.ASSIGNED, f"assigned to {worker_class.value}", worker_class)
            task.assigned_worker_class = worker_class
            task.assigned_at = self._clock()
            task = self.tasks.save(task)
            self._refresh_convoy(task.convoy_id)
        return task

    def start_task(
        self,
        task_id: str,
        worker_id: Optional[str] = None,
        expected_revision: Optional[int] = None,
    ) -> Task:
        with self._locked():
            task = self.tasks.require(task_id, expected_revision)
            self._move(task, TaskStatus.IN_PROGRESS, f"started by {worker_id}" if worker_id else "started")
            task.assigned_worker_id = worker_id
            task.started_at = self._clock()
            task = self.tasks.save(task)
            self._refresh_convoy(task.convoy_id)
        return task

    def complete_task(
        self,
        task_id: str,
        result: Optional[TaskCompletionResult] = None,
        expected_revision: Optional[int] = None,
    ) -> Task:
        with self._locked():
            task = self.tasks.require(task_id, expected_revision)
            self._move(task, TaskStatus.COMPLETED, (result.summary or "") if result else "")
            task.completed_at = self._clock()
            task.result = result or TaskCompletionResult()
            task = self.tasks.save(task)

            unblocked = self._unblock_dependent_tasks(task.id)
            if unblocked:
                logger.info("Task %s unblocked: %s", task.id, ", ".join(unblocked))
            touched = {task.convoy_id}
            touched.update(t.convoy_id for t in map(self.tasks.get, unblocked) if t)
            for convoy_id in sorted(c for c in touched if c):
                self._refresh_convoy(convoy_id)
        return task

    def fail_task(
        self,
        task_id: str,
        reason: str,
        expected_revision: Optional[int] = None,
    ) -> FailureOutcome:
        """Mark a task Failed and count the attempt in one persisted step.

        ``escalation_required`` is advisory: the task stays Failed and
        nothing is cancelled or requested automatically.
        """
        with self._locked():
            task = self.tasks.require(task_id, expected_revision)
            self._move(task, TaskStatus.FAILED, reason)
            task.error_message = reason
            task.completed_at = self._clock()
            count = self.iterations.bump(task)
            task = self.tasks.save(task)
            self._refresh_convoy(task.convoy_id)

        escalate = count >= task.max_iterations
        if escalate:
            logger.warning("Task %s needs escalation: %d/%d iterations used",
                           task.id, count, task.max_iterations)
        return FailureOutcome(
            task=task,
            iteration_count=count,
            max_iterations=task.max_iterations,
            escalation_required=escalate,
        )

    def cancel_task(
        self,
        task_id: str,
        reason: str = "",
        expected_revision: Optional[int] = None,
    ) -> Task:
        with self._locked():
            task = self.tasks.require(task_id, expected_revision)
            self._move(task, TaskStatus.CANCELLED, reason)
            task.error_message = reason or None
            task.completed_at = self._clock()
            task = self.tasks.save(task)
            self._refresh_convoy(task.convoy_id)
        return task

    def retry_task(self, task_id: str, expected_revision: Optional[int] = None) -> Task:
        """Failed -> Pending. The iteration count is preserved."""
        with self._locked():
            task = self.tasks.require(task_id, expected_revision)
            self._move(task, TaskStatus.PENDING, "retry")
            task.assigned_worker_class = None
            task.assigned_worker_id = None
            task.assigned_at = None
            task.started_at = None
            task.completed_at = None
            task.error_message = None
            task.result = None
            waiting_on = self._unsatisfied(task)
            if waiting_on:
                self._move(task, TaskStatus.BLOCKED, f"waiting on {', '.join(waiting_on)}")
            task = self.tasks.save(task)
        return task

    def get_task(self, task_id: str) -> Task:
        return self.tasks.require(task_id)

    def list_tasks(self, task_filter: Optional[TaskFilter] = None) -> list[Task]:
        return self.tasks.query(task_filter or TaskFilter())

    def get_next_task(self, worker_class: Optional[Union[WorkerClass, str]] = None) -> Optional[Task]:
        """Highest-priority Pending task whose prerequisites are all Completed.

        With a worker class, tasks in a convoy earmarked for a different
        class are skipped.
        """
        worker_class = WorkerClass(worker_class) if worker_class else None
        with self._locked():
            snapshot = self.tasks.snapshot()
            convoys = self.convoys.snapshot()
            candidates = []
            for task in snapshot.values():
                if task.status != TaskStatus.PENDING:
                    continue
                if not dependencies.task_prerequisites_met(task, snapshot):
                    continue
                if worker_class is not None and task.convoy_id in convoys:
                    earmarked = convoys[task.convoy_id].assigned_worker_class
                    if earmarked is not None and earmarked != worker_class:
                        continue
                candidates.append(task)
        if not candidates:
            return None
        return min(candidates, key=lambda t: (-t.priority, t.sequence))

    # ------------------------------------------------------------------
    # Convoys
    # ------------------------------------------------------------------

    def create_convoy(self, config: ConvoyConfig) -> Convoy:
        with self._locked():
            members = []
            for task_id in dict.fromkeys(config.task_ids):
                task = self.tasks.require(task_id)
                if task.convoy_id:
                    raise ConflictError(f"Task '{task_id}' already belongs to convoy '{task.convoy_id}'")
                members.append(task)
            for prerequisite_id in config.dependencies:
                self.convoys.require(prerequisite_id)

            convoy_id, sequence = self.convoys.new_id()
            convoy = Convoy(
                id=convoy_id,
                sequence=sequence,
                name=config.name,
                description=config.description,
                milestone=config.milestone,
                task_ids=[t.id for t in members],
                dependencies=list(config.dependencies),
                priority=config.priority,
                assigned_worker_class=config.assigned_worker_class,
                deliverables=list(config.deliverables),
                completion_criteria=list(config.completion_criteria),
                created_at=self._clock(),
            )
            waiting_on = self._unsatisfied_convoy(convoy)
            if waiting_on:
                convoy.status = ConvoyStatus.BLOCKED
            self.convoys.insert(convoy)
            logger.info("Convoy created: %s '%s' (%d tasks, %s)",
                        convoy.id, convoy.name, len(members), convoy.status.value)

            for task in members:
                task.convoy_id = convoy.id
                self.tasks.save(task)
            self._refresh_convoy(convoy.id)
            return self._with_progress(self.convoys.require(convoy.id))

    def get_convoy(self, convoy_id: str) -> Convoy:
        with self._locked():
            return self._with_progress(self.convoys.require(convoy_id))

    def list_convoys(self, convoy_filter: Optional[ConvoyFilter] = None) -> list[Convoy]:
        with self._locked():
            return [self._with_progress(c) for c in self.convoys.query(convoy_filter or ConvoyFilter())]

    def add_task_to_convoy(self, convoy_id: str, task_id: str) -> Convoy:
        with self._locked():
            convoy = self.convoys.require(convoy_id)
            self._require_open_convoy(convoy)
            task = self.tasks.require(task_id)
            if task.convoy_id and task.convoy_id != convoy_id:
                raise ConflictError(f"Task '{task_id}' already belongs to convoy '{task.convoy_id}'")
            if task_id not in convoy.task_ids:
                convoy.task_ids.append(task_id)
                self.convoys.save(convoy)
            if task.convoy_id != convoy_id:
                task.convoy_id = convoy_id
                self.tasks.save(task)
            logger.info("Task %s added to convoy %s", task_id, convoy_id)
            self._refresh_convoy(convoy_id)
            return self._with_progress(self.convoys.require(convoy_id))

    def remove_task_from_convoy(self, convoy_id: str, task_id: str) -> Convoy:
        with self._locked():
            convoy = self.convoys.require(convoy_id)
            self._require_open_convoy(convoy)
            if task_id not in convoy.task_ids:
                raise PreconditionFailedError(f"Task '{task_id}' is not a member of convoy '{convoy_id}'")
            convoy.task_ids.remove(task_id)
            self.convoys.save(convoy)
            task = self.tasks.get(task_id)
            if task is not None and task.convoy_id == convoy_id:
                task.convoy_id = None
                self.tasks.save(task)
            logger.info("Task %s removed from convoy %s", task_id, convoy_id)
            return self._with_progress(self.convoys.require(convoy_id))

    def add_convoy_dependency(self, convoy_id: str, prerequisite_id: str) -> Convoy:
        with self._locked():
            convoy = self.convoys.require(convoy_id)
            self._require_open_convoy(convoy)
            self.convoys.require(prerequisite_id)
            edges = {c.id: c.dependencies for c in self.convoys.all()}
            if dependencies.would_create_cycle(convoy_id, prerequisite_id, edges):
                raise PreconditionFailedError(
                    f"Convoy '{convoy_id}' depending on '{prerequisite_id}' would create a cycle"
                )
            if prerequisite_id not in convoy.dependencies:
                convoy.dependencies.append(prerequisite_id)
                if convoy.status == ConvoyStatus.PENDING and self._unsatisfied_convoy(convoy):
                    self._set_convoy_status(convoy, ConvoyStatus.BLOCKED, f"waiting on {prerequisite_id}")
                self.convoys.save(convoy)
            return self._with_progress(self.convoys.require(convoy_id))

    def remove_convoy_dependency(self, convoy_id: str, prerequisite_id: str) -> Convoy:
        with self._locked():
            convoy = self.convoys.require(convoy_id)
            self._require_open_convoy(convoy)
            if prerequisite_id in convoy.dependencies:
                convoy.dependencies.remove(prerequisite_id)
                self.convoys.save(convoy)
                self._refresh_convoy(convoy_id)
            return self._with_progress(self.convoys.require(convoy_id))

    def complete_convoy(self, convoy_id: str, expected_revision: Optional[int] = None) -> Convoy:
        """Complete a convoy whose member tasks are all Completed."""
        with self._locked():
            convoy = self.convoys.require(convoy_id, expected_revision)
            if convoy.status not in OPEN_CONVOY_STATUSES:
                raise InvalidTransitionError(convoy.id, convoy.status.value, ConvoyStatus.COMPLETED.value)

            waiting_on = self._unsatisfied_convoy(convoy)
            if waiting_on:
                raise PreconditionFailedError(
                    f"Convoy '{convoy_id}' has unsatisfied prerequisites: {', '.join(waiting_on)}"
                )

            progress = dependencies.convoy_progress(convoy.task_ids, self.tasks.snapshot())
            if not progress.all_tasks_complete:
                raise PreconditionFailedError(
                    f"Convoy '{convoy_id}' has {progress.completed_tasks}/{progress.total_tasks} "
                    "tasks completed"
                )

            convoy = self._refresh_convoy(convoy_id) or convoy
            self._set_convoy_status(convoy, ConvoyStatus.COMPLETED, "all tasks completed")
            convoy.completed_at = self._clock()
            convoy = self.convoys.save(convoy)

            unblocked = self._unblock_dependent_convoys(convoy.id)
            if unblocked:
                logger.info("Convoy %s unblocked: %s", convoy.id, ", ".join(unblocked))
            return self._with_progress(convoy)

    def try_auto_complete_convoy(self, convoy_id: str) -> bool:
        """Complete the convoy if every member is done; report whether it did."""
        with self._locked():
            convoy = self.convoys.require(convoy_id)
            if convoy.status not in OPEN_CONVOY_STATUSES or self._unsatisfied_convoy(convoy):
                return False
            progress = dependencies.convoy_progress(convoy.task_ids, self.tasks.snapshot())
            if not progress.all_tasks_complete:
                return False
            self.complete_convoy(convoy_id)
            return True

    def fail_convoy(self, convoy_id: str, reason: str, expected_revision: Optional[int] = None) -> Convoy:
        with self._locked():
            convoy = self.convoys.require(convoy_id, expected_revision)
            self._set_convoy_status(convoy, ConvoyStatus.FAILED, reason)
            convoy.error_message = reason
            convoy.completed_at = self._clock()
            return self._with_progress(self.convoys.save(convoy))

    def cancel_convoy(self, convoy_id: str, reason: str = "", expected_revision: Optional[int] = None) -> Convoy:
        with self._locked():
            convoy = self.convoys.require(convoy_id, expected_revision)
            self._set_convoy_status(convoy, ConvoyStatus.CANCELLED, reason)
            convoy.error_message = reason or None
            convoy.completed_at = self._clock()
            return self._with_progress(self.convoys.save(convoy))

    def retry_convoy(self, convoy_id: str, expected_revision: Optional[int] = None) -> Convoy:
        with self._locked():
            convoy = self.convoys.require(convoy_id, expected_revision)
            self._set_convoy_status(convoy, ConvoyStatus.PENDING, "retry")
            convoy.error_message = None
            convoy.completed_at = None
            if self._unsatisfied_convoy(convoy):
                self._set_convoy_status(convoy, ConvoyStatus.BLOCKED, "prerequisites not completed")
            self.convoys.save(convoy)
            self._refresh_convoy(convoy_id)
            return self._with_progress(self.convoys.require(convoy_id))

    def next_ready_convoy(self, milestone: Optional[str] = None) -> Optional[Convoy]:
        """Promote unblocked convoys, then pick the best Pending one."""
        with self._locked():
            for convoy in self.convoys.all():
                if convoy.status == ConvoyStatus.BLOCKED:
                    self._refresh_convoy(convoy.id)
            snapshot = self.convoys.snapshot()
            ready = dependencies.next_ready_convoy(
                sorted(snapshot.values(), key=lambda c: c.sequence), snapshot, milestone,
            )
            return self._with_progress(ready) if ready is not None else None

    def convoy_task_summary(self, convoy_id: str) -> ConvoyTaskSummary:
        with self._locked():
            convoy = self.convoys.require(convoy_id)
            grouped: dict[TaskStatus, list[Task]] = {}
            for task_id in convoy.task_ids:
                task = self.tasks.get(task_id)
                if task is not None:
                    grouped.setdefault(task.status, []).append(task)
        return ConvoyTaskSummary(convoy_id=convoy.id, convoy_name=convoy.name, tasks_by_status=grouped)
