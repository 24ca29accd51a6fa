"""Tests for overseer/orchestration/orchestrator.py — task lifecycle."""

import json

import pytest

from overseer.core.exceptions import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionFailedError,
)
from overseer.core.models import (
    ConvoyConfig,
    TaskCompletionResult,
    TaskConfig,
    TaskFilter,
    TaskStatus,
    WorkerClass,
)
from overseer.orchestration.convoy_store import ConvoyStore
from overseer.orchestration.orchestrator import Orchestrator
from overseer.orchestration.task_store import TaskStore
from overseer.safety.iteration_guard import IterationGuard


def _run_to_completion(orchestrator, task_id):
    orchestrator.assign_task(task_id, WorkerClass.SCRIPT)
    orchestrator.start_task(task_id, "worker-1")
    return orchestrator.complete_task(task_id, TaskCompletionResult(summary="done"))


class TestCreateTask:
    def test_new_task_is_pending(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="Player controller"))
        assert task.id == "task-001"
        assert task.status == TaskStatus.PENDING
        assert task.iteration_count == 0
        assert task.history[0].to_status == TaskStatus.PENDING

    def test_persisted_as_json_file(self, orchestrator, state_dir):
        task = orchestrator.create_task(TaskConfig(name="HUD"))
        data = json.loads((state_dir / "tasks" / f"{task.id}.json").read_text())
        assert data["name"] == "HUD"
        assert data["status"] == "pending"

    def test_unsatisfied_dependency_blocks(self, orchestrator):
        first = orchestrator.create_task(TaskConfig(name="Scene"))
        second = orchestrator.create_task(TaskConfig(name="Script", dependencies=[first.id]))
        assert second.status == TaskStatus.BLOCKED
        assert second.history[-1].from_status == TaskStatus.PENDING

    def test_unknown_dependency_counts_as_unsatisfied(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x", dependencies=["task-999"]))
        assert task.status == TaskStatus.BLOCKED

    def test_completed_dependency_does_not_block(self, orchestrator):
        first = orchestrator.create_task(TaskConfig(name="Scene"))
        _run_to_completion(orchestrator, first.id)
        second = orchestrator.create_task(TaskConfig(name="Script", dependencies=[first.id]))
        assert second.status == TaskStatus.PENDING

    def test_default_max_iterations(self, orchestrator):
        assert orchestrator.create_task(TaskConfig(name="x")).max_iterations == 50

    def test_max_iterations_capped_by_ceiling(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x", max_iterations=500))
        assert task.max_iterations == 50

    def test_joins_convoy(self, orchestrator):
        convoy = orchestrator.create_convoy(ConvoyConfig(name="C"))
        task = orchestrator.create_task(TaskConfig(name="x", convoy_id=convoy.id))
        assert task.convoy_id == convoy.id
        assert task.id in orchestrator.get_convoy(convoy.id).task_ids

    def test_unknown_convoy(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.create_task(TaskConfig(name="x", convoy_id="convoy-404"))


class TestAssignAndStart:
    def test_assign_records_worker_class(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        assigned = orchestrator.assign_task(task.id, "scene")
        assert assigned.status == TaskStatus.ASSIGNED
        assert assigned.assigned_worker_class == WorkerClass.SCENE
        assert assigned.assigned_at is not None

    def test_assign_with_unsatisfied_prerequisites(self, orchestrator):
        first = orchestrator.create_task(TaskConfig(name="a"))
        second = orchestrator.create_task(TaskConfig(name="b", dependencies=[first.id]))
        with pytest.raises(PreconditionFailedError):
            orchestrator.assign_task(second.id, WorkerClass.SCRIPT)
        assert orchestrator.get_task(second.id).status == TaskStatus.BLOCKED

    def test_coordinator_cannot_be_assigned(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        with pytest.raises(PreconditionFailedError):
            orchestrator.assign_task(task.id, WorkerClass.MAYOR)
        assert orchestrator.get_task(task.id).status == TaskStatus.PENDING

    def test_assign_unknown_task(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.assign_task("task-404", WorkerClass.SCRIPT)

    def test_start_records_worker_id(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        orchestrator.assign_task(task.id, WorkerClass.ASSET)
        started = orchestrator.start_task(task.id, "asset-worker-7")
        assert started.status == TaskStatus.IN_PROGRESS
        assert started.assigned_worker_id == "asset-worker-7"
        assert started.started_at is not None

    def test_start_requires_assignment(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        with pytest.raises(InvalidTransitionError):
            orchestrator.start_task(task.id, "w")

    def test_complete_requires_in_progress(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        orchestrator.assign_task(task.id, WorkerClass.SCRIPT)
        with pytest.raises(InvalidTransitionError):
            orchestrator.complete_task(task.id)


class TestCompleteTask:
    def test_records_result(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        done = _run_to_completion(orchestrator, task.id)
        assert done.status == TaskStatus.COMPLETED
        assert done.completed_at is not None
        assert done.result.summary == "done"

    def test_unblocks_dependents(self, orchestrator):
        a = orchestrator.create_task(TaskConfig(name="a"))
        b = orchestrator.create_task(TaskConfig(name="b"))
        c = orchestrator.create_task(TaskConfig(name="c", dependencies=[a.id, b.id]))
        _run_to_completion(orchestrator, a.id)
        assert orchestrator.get_task(c.id).status == TaskStatus.BLOCKED
        _run_to_completion(orchestrator, b.id)
        assert orchestrator.get_task(c.id).status == TaskStatus.PENDING


class TestTerminalStates:
    @pytest.mark.parametrize("finish", ["complete", "cancel"])
    def test_no_transition_out_of_completed_or_cancelled(self, orchestrator, finish):
        task = orchestrator.create_task(TaskConfig(name="x"))
        if finish == "complete":
            _run_to_completion(orchestrator, task.id)
        else:
            orchestrator.cancel_task(task.id, "scope cut")
        for action in (
            lambda: orchestrator.assign_task(task.id, WorkerClass.SCRIPT),
            lambda: orchestrator.start_task(task.id, "w"),
            lambda: orchestrator.complete_task(task.id),
            lambda: orchestrator.fail_task(task.id, "x"),
            lambda: orchestrator.cancel_task(task.id),
            lambda: orchestrator.retry_task(task.id),
        ):
            with pytest.raises(InvalidTransitionError):
                action()

    def test_failed_only_leaves_through_retry(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        orchestrator.fail_task(task.id, "boom")
        with pytest.raises(InvalidTransitionError):
            orchestrator.assign_task(task.id, WorkerClass.SCRIPT)
        with pytest.raises(InvalidTransitionError):
            orchestrator.cancel_task(task.id)
        assert orchestrator.retry_task(task.id).status == TaskStatus.PENDING


class TestFailAndRetry:
    def test_escalation_scenario(self, orchestrator, governor):
        t1 = orchestrator.create_task(TaskConfig(name="T1", max_iterations=2))

        outcome = orchestrator.fail_task(t1.id, "x")
        assert outcome.iteration_count == 1
        assert outcome.escalation_required is False
        assert governor.get_iteration_info(t1.id).limit_reached is False

        retried = orchestrator.retry_task(t1.id)
        assert retried.status == TaskStatus.PENDING
        assert retried.iteration_count == 1

        outcome = orchestrator.fail_task(t1.id, "y")
        assert outcome.iteration_count == 2
        assert outcome.escalation_required is True
        assert governor.get_iteration_info(t1.id).limit_reached is True
        assert orchestrator.get_task(t1.id).status == TaskStatus.FAILED
        assert governor.list_pending_approvals() == []

    def test_fail_records_reason_and_history(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        orchestrator.assign_task(task.id, WorkerClass.SCRIPT)
        outcome = orchestrator.fail_task(task.id, "compile error")
        assert outcome.task.error_message == "compile error"
        assert outcome.task.history[-1].to_status == TaskStatus.FAILED
        assert outcome.task.history[-1].message == "compile error"

    def test_retry_clears_assignment(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        orchestrator.assign_task(task.id, WorkerClass.SCRIPT)
        orchestrator.start_task(task.id, "w1")
        orchestrator.fail_task(task.id, "boom")
        retried = orchestrator.retry_task(task.id)
        assert retried.assigned_worker_class is None
        assert retried.assigned_worker_id is None
        assert retried.started_at is None
        assert retried.error_message is None

    def test_retry_reblocks_when_prerequisites_unmet(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x", dependencies=["task-999"]))
        orchestrator.fail_task(task.id, "boom")
        assert orchestrator.retry_task(task.id).status == TaskStatus.BLOCKED

    def test_retry_requires_failed(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        with pytest.raises(InvalidTransitionError):
            orchestrator.retry_task(task.id)


class TestRevisions:
    def test_revision_increases_per_mutation(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        assigned = orchestrator.assign_task(task.id, WorkerClass.SCRIPT)
        assert assigned.revision == task.revision + 1

    def test_stale_revision_conflicts(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        orchestrator.assign_task(task.id, WorkerClass.SCRIPT, expected_revision=task.revision)
        with pytest.raises(ConflictError):
            orchestrator.start_task(task.id, "w", expected_revision=task.revision)

    def test_matching_revision_passes(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="x"))
        assigned = orchestrator.assign_task(task.id, WorkerClass.SCRIPT)
        started = orchestrator.start_task(task.id, "w", expected_revision=assigned.revision)
        assert started.status == TaskStatus.IN_PROGRESS


class TestQueries:
    def test_list_sorted_by_priority_then_creation(self, orchestrator):
        low = orchestrator.create_task(TaskConfig(name="low", priority=1))
        high = orchestrator.create_task(TaskConfig(name="high", priority=5))
        low2 = orchestrator.create_task(TaskConfig(name="low2", priority=1))
        assert [t.id for t in orchestrator.list_tasks()] == [high.id, low.id, low2.id]

    def test_filters(self, orchestrator):
        a = orchestrator.create_task(TaskConfig(name="a", milestone="m1", tags=["ui", "hud"]))
        orchestrator.create_task(TaskConfig(name="b", milestone="m2", tags=["ui"]))
        c = orchestrator.create_task(TaskConfig(name="c", milestone="m1"))
        _run_to_completion(orchestrator, c.id)

        assert [t.id for t in orchestrator.list_tasks(TaskFilter(milestone="m1"))] == [a.id, c.id]
        assert [t.id for t in orchestrator.list_tasks(TaskFilter(tags=["ui", "hud"]))] == [a.id]
        assert [t.id for t in orchestrator.list_tasks(TaskFilter(status=TaskStatus.COMPLETED))] == [c.id]
        active = orchestrator.list_tasks(TaskFilter(milestone="m1", include_completed=False))
        assert [t.id for t in active] == [a.id]
        by_worker = orchestrator.list_tasks(TaskFilter(worker_class=WorkerClass.SCRIPT))
        assert [t.id for t in by_worker] == [c.id]

    def test_offset_and_limit(self, orchestrator):
        ids = [orchestrator.create_task(TaskConfig(name=f"t{i}")).id for i in range(5)]
        page = orchestrator.list_tasks(TaskFilter(offset=1, limit=2))
        assert [t.id for t in page] == ids[1:3]

    def test_get_unknown_task(self, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.get_task("task-404")

    def test_next_task_skips_blocked_and_picks_priority(self, orchestrator):
        a = orchestrator.create_task(TaskConfig(name="a", priority=1))
        orchestrator.create_task(TaskConfig(name="b", priority=9, dependencies=["task-999"]))
        c = orchestrator.create_task(TaskConfig(name="c", priority=3))
        assert orchestrator.get_next_task().id == c.id
        orchestrator.assign_task(c.id, WorkerClass.SCRIPT)
        assert orchestrator.get_next_task().id == a.id

    def test_next_task_none_when_nothing_ready(self, orchestrator):
        assert orchestrator.get_next_task() is None


class TestPersistenceAcrossRestart:
    def test_reload_from_disk(self, orchestrator, state_dir):
        task = orchestrator.create_task(TaskConfig(name="x", max_iterations=3))
        orchestrator.fail_task(task.id, "boom")

        tasks = TaskStore(state_dir)
        fresh = Orchestrator(tasks, ConvoyStore(state_dir), IterationGuard(tasks))
        reloaded = fresh.get_task(task.id)
        assert reloaded.status == TaskStatus.FAILED
        assert reloaded.iteration_count == 1
        assert fresh.create_task(TaskConfig(name="y")).id == "task-002"
