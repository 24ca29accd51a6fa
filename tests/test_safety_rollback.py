"""Tests for overseer/safety/rollback.py — checkpoint rollback.

Runs against real git repositories created in tmp_path.
"""

import pytest

from overseer.core.exceptions import ExternalFailureError
from overseer.safety.rollback import RollbackCoordinator
from overseer.tools.git_ops import GitVersionControl

from tests.conftest import commit_file


@pytest.fixture
def vcs(git_repo):
    return GitVersionControl(str(git_repo))


@pytest.fixture
def coordinator(tmp_path, vcs, clock):
    return RollbackCoordinator(tmp_path / "safety", vcs, clock=clock)


class TestTriggerRollback:
    def test_default_reverts_one_commit(self, coordinator, vcs, git_repo):
        base = vcs.head()
        commit_file(git_repo, "broken.py", "oops", "broken change")
        broken = vcs.head()

        result = coordinator.trigger_rollback("tests failed")
        assert result.success is True
        assert result.rolled_back_from == broken
        assert result.rolled_back_to == base
        assert result.changes_reverted == 1
        assert result.affected_files == ["broken.py"]
        assert vcs.head() == base
        assert not (git_repo / "broken.py").exists()

    def test_rolls_back_to_checkpoint(self, coordinator, vcs, git_repo):
        checkpoint = coordinator.mark_checkpoint(note="green build")
        assert checkpoint.ref == vcs.head()
        commit_file(git_repo, "a.txt", "a", "a")
        commit_file(git_repo, "b.txt", "b", "b")

        result = coordinator.trigger_rollback("drifted")
        assert result.rolled_back_to == checkpoint.ref
        assert result.changes_reverted == 2
        assert sorted(result.affected_files) == ["a.txt", "b.txt"]

    def test_explicit_target_wins_over_checkpoint(self, coordinator, vcs, git_repo):
        base = vcs.head()
        commit_file(git_repo, "a.txt", "a", "a")
        coordinator.mark_checkpoint()
        commit_file(git_repo, "b.txt", "b", "b")

        result = coordinator.trigger_rollback("all the way", target_ref=base)
        assert result.rolled_back_to == base
        assert result.changes_reverted == 2

    def test_bad_ref_is_logged_failure(self, coordinator, vcs):
        head = vcs.head()
        result = coordinator.trigger_rollback("bad", target_ref="no-such-ref")
        assert result.success is False
        assert result.error_message
        assert vcs.head() == head
        assert coordinator.list_rollbacks()[-1].success is False

    def test_non_repo_is_logged_failure(self, tmp_path, clock):
        plain = tmp_path / "plain"
        plain.mkdir()
        coordinator = RollbackCoordinator(tmp_path / "safety", GitVersionControl(str(plain)), clock=clock)
        result = coordinator.trigger_rollback("nothing to revert")
        assert result.success is False
        assert len(coordinator.list_rollbacks()) == 1

    def test_raise_on_failure(self, tmp_path, vcs, clock):
        coordinator = RollbackCoordinator(tmp_path / "safety", vcs, raise_on_failure=True, clock=clock)
        with pytest.raises(ExternalFailureError):
            coordinator.trigger_rollback("bad", target_ref="no-such-ref")
        # Failure is still recorded before raising
        assert len(coordinator.list_rollbacks()) == 1


class TestCheckpointAndLog:
    def test_no_checkpoint_initially(self, coordinator):
        assert coordinator.get_checkpoint() is None

    def test_checkpoint_persists(self, tmp_path, coordinator, vcs):
        coordinator.mark_checkpoint(note="known good")
        reloaded = RollbackCoordinator(tmp_path / "safety", vcs)
        assert reloaded.get_checkpoint().note == "known good"

    def test_log_is_bounded(self, tmp_path, vcs, clock):
        coordinator = RollbackCoordinator(tmp_path / "safety", vcs, log_limit=2, clock=clock)
        for i in range(3):
            coordinator.trigger_rollback(f"attempt {i}", target_ref="no-such-ref")
        assert [r.reason for r in coordinator.list_rollbacks()] == ["attempt 1", "attempt 2"]
        assert len(coordinator.list_rollbacks(limit=10)) == 3
