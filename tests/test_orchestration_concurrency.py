"""Concurrent callers against shared stores — no lost updates, no torn reads."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from overseer.core.exceptions import InvalidTransitionError
from overseer.core.models import TaskConfig, TaskStatus, WorkerClass


class TestConcurrentTasks:
    def test_parallel_creates_get_unique_ids(self, orchestrator):
        with ThreadPoolExecutor(max_workers=8) as pool:
            tasks = list(pool.map(lambda i: orchestrator.create_task(TaskConfig(name=f"t{i}")), range(40)))
        ids = {t.id for t in tasks}
        assert len(ids) == 40
        assert len(orchestrator.list_tasks()) == 40

    def test_only_one_assignment_wins(self, orchestrator):
        task = orchestrator.create_task(TaskConfig(name="contested"))

        def attempt(_):
            try:
                orchestrator.assign_task(task.id, WorkerClass.SCRIPT)
                return True
            except InvalidTransitionError:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(16)))
        assert results.count(True) == 1
        assert orchestrator.get_task(task.id).status == TaskStatus.ASSIGNED

    def test_increments_are_not_lost(self, orchestrator, governor):
        task = orchestrator.create_task(TaskConfig(name="x"))
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: governor.increment_iteration(task.id), range(50)))
        assert governor.get_iteration_info(task.id).current_iteration == 50


class TestConcurrentBudget:
    def test_parallel_costs_all_recorded(self, governor):
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: governor.record_cost("0.10", f"call {i}"), range(30)))
        status = governor.get_budget_status()
        assert status.spent_this_hour == Decimal("3.00")
        assert len(status.recent_costs) == 30
