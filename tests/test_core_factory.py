"""Tests for overseer/core/factory.py — ComponentFactory wiring."""

from decimal import Decimal
from pathlib import Path

from overseer.core.config import AppConfig, SafetyConfig, StorageConfig
from overseer.core.factory import ComponentBundle, ComponentFactory
from overseer.core.models import TaskConfig, WorkerClass
from overseer.tools.git_ops import GitVersionControl


class FakeVcs:
    """Records rollback calls without touching a repository."""

    def __init__(self):
        self.resets: list[str] = []

    def head(self) -> str:
        return "b" * 40

    def resolve(self, ref: str) -> str:
        return "a" * 40 if ref != "HEAD" else self.head()

    def changed_files(self, from_ref: str, to_ref: str) -> list[str]:
        return ["scene.json"]

    def count_commits(self, from_ref: str, to_ref: str) -> int:
        return 1

    def reset_hard(self, ref: str) -> None:
        self.resets.append(ref)


class TestComponentFactory:
    def test_create_from_config_dir(self, tmp_path, monkeypatch):
        monkeypatch.delenv("OVERSEER_STATE_DIR", raising=False)
        config_dir = Path(__file__).parent.parent / "config"
        bundle = ComponentFactory.create(config_dir=config_dir, env="test", state_dir=tmp_path / "state")
        assert isinstance(bundle, ComponentBundle)
        assert bundle.state_root == tmp_path / "state"
        assert bundle.state_root.is_dir()
        assert bundle.config.logging.level == "DEBUG"

    def test_state_root_from_config(self, tmp_path):
        config = AppConfig(storage=StorageConfig(state_dir=str(tmp_path / "hooks")))
        bundle = ComponentFactory.create(config=config, vcs=FakeVcs())
        assert bundle.state_root == tmp_path / "hooks"

    def test_default_vcs_is_git(self, bundle, git_repo):
        vcs = bundle.governor.rollback.vcs
        assert isinstance(vcs, GitVersionControl)
        assert vcs.repo_path == str(git_repo)

    def test_orchestrator_and_governor_share_task_store(self, bundle):
        assert bundle.orchestrator.tasks is bundle.task_store
        assert bundle.orchestrator.convoys is bundle.convoy_store
        assert bundle.orchestrator.iterations is bundle.governor.iterations

        task = bundle.orchestrator.create_task(TaskConfig(name="x", max_iterations=2))
        bundle.orchestrator.assign_task(task.id, WorkerClass.SCRIPT)
        bundle.orchestrator.fail_task(task.id, "nope")
        assert bundle.governor.get_iteration_info(task.id).current_iteration == 1

    def test_safety_config_applied(self, state_dir):
        config = AppConfig(
            storage=StorageConfig(state_dir=str(state_dir)),
            safety=SafetyConfig(max_iterations_per_task=3, max_parallel_agents=2),
        )
        bundle = ComponentFactory.create(config=config, vcs=FakeVcs())
        assert bundle.governor.admission.max_parallel_agents == 2
        task = bundle.orchestrator.create_task(TaskConfig(name="x", max_iterations=10))
        assert task.max_iterations == 3

    def test_injected_vcs_used_for_rollback(self, state_dir):
        vcs = FakeVcs()
        config = AppConfig(storage=StorageConfig(state_dir=str(state_dir)))
        bundle = ComponentFactory.create(config=config, vcs=vcs)
        result = bundle.governor.trigger_rollback("regression")
        assert result.success is True
        assert vcs.resets == ["a" * 40]
        assert (state_dir / "safety" / "rollback-log.jsonl").exists()

    def test_state_reloaded_by_second_bundle(self, app_config, clock):
        first = ComponentFactory.create(config=app_config, clock=clock)
        first.orchestrator.create_task(TaskConfig(name="persisted"))
        first.governor.record_cost("1.00", "call")

        second = ComponentFactory.create(config=app_config, clock=clock)
        assert [t.name for t in second.orchestrator.list_tasks()] == ["persisted"]
        assert second.governor.get_budget_status().total_spent == Decimal("1.00")
