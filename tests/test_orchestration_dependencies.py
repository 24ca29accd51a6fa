"""Tests for overseer/orchestration/dependencies.py — pure resolution helpers."""

from overseer.core.models import Convoy, ConvoyStatus, Task, TaskStatus
from overseer.orchestration.dependencies import (
    convoy_progress,
    next_ready_convoy,
    task_prerequisites_met,
    unsatisfied_prerequisites,
    would_create_cycle,
)


def _convoy(cid, seq, status=ConvoyStatus.PENDING, deps=(), priority=1, milestone=None):
    return Convoy(
        id=cid, sequence=seq, name=cid, status=status,
        dependencies=list(deps), priority=priority, milestone=milestone,
    )


class TestUnsatisfiedPrerequisites:
    def test_generic_over_identifier_space(self):
        statuses = {"a": "done", "b": "running"}
        assert unsatisfied_prerequisites(["a", "b", "c"], statuses.get, "done") == ["b", "c"]

    def test_empty_is_satisfied(self):
        assert unsatisfied_prerequisites([], lambda _: None, "done") == []

    def test_task_prerequisites(self):
        tasks = {
            "task-001": Task(id="task-001", sequence=1, name="a", status=TaskStatus.COMPLETED),
            "task-002": Task(id="task-002", sequence=2, name="b", dependencies=["task-001"]),
            "task-003": Task(id="task-003", sequence=3, name="c", dependencies=["task-002"]),
        }
        assert task_prerequisites_met(tasks["task-002"], tasks) is True
        assert task_prerequisites_met(tasks["task-003"], tasks) is False


class TestNextReadyConvoy:
    def test_dependency_rule(self):
        a = _convoy("A", 1, status=ConvoyStatus.COMPLETED)
        b = _convoy("B", 2, deps=["A"])
        by_id = {"A": a, "B": b}
        assert next_ready_convoy([a, b], by_id).id == "B"

    def test_skips_incomplete_prerequisite(self):
        a = _convoy("A", 1, status=ConvoyStatus.IN_PROGRESS)
        b = _convoy("B", 2, deps=["A"], priority=9)
        assert next_ready_convoy([a, b], {"A": a, "B": b}) is None

    def test_only_pending_candidates(self):
        a = _convoy("A", 1, status=ConvoyStatus.BLOCKED)
        assert next_ready_convoy([a], {"A": a}) is None

    def test_ties_broken_by_sequence(self):
        first = _convoy("X", 5, priority=3)
        second = _convoy("Y", 7, priority=3)
        assert next_ready_convoy([second, first], {"X": first, "Y": second}).id == "X"

    def test_milestone(self):
        a = _convoy("A", 1, milestone="m1")
        assert next_ready_convoy([a], {"A": a}, milestone="m2") is None


class TestConvoyProgress:
    def test_counts_known_members(self):
        tasks = {
            "t1": Task(id="t1", sequence=1, name="a", status=TaskStatus.COMPLETED),
            "t2": Task(id="t2", sequence=2, name="b", status=TaskStatus.BLOCKED),
        }
        progress = convoy_progress(["t1", "t2", "missing"], tasks)
        assert progress.total_tasks == 2
        assert progress.completed_tasks == 1
        assert progress.blocked_tasks == 1
        assert progress.percent_complete == 50


class TestCycleDetection:
    def test_self_edge(self):
        assert would_create_cycle("A", "A", {}) is True

    def test_indirect_cycle(self):
        edges = {"B": ["A"], "C": ["B"]}
        assert would_create_cycle("A", "C", edges) is True

    def test_no_cycle(self):
        edges = {"B": ["A"]}
        assert would_create_cycle("C", "B", edges) is False
