"""Shared fixtures for Overseer tests.

All tests use REAL dependencies: real temp directories for state and real
git repositories for rollback. Time is injected through FakeClock.
"""

from __future__ import annotations

import subprocess
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from overseer.core.config import AppConfig, RollbackConfig, SafetyConfig, StorageConfig
from overseer.core.factory import ComponentBundle, ComponentFactory


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def init_git_repo(path: Path) -> None:
    """Initialize a git repo with one commit."""
    def git(*args: str) -> None:
        subprocess.run(["git", *args], cwd=path, check=True, capture_output=True)

    git("init")
    git("config", "user.email", "test@test.com")
    git("config", "user.name", "Test")
    (path / "initial.txt").write_text("initial content")
    git("add", "-A")
    git("commit", "-m", "initial commit")


def commit_file(path: Path, name: str, content: str, message: str) -> None:
    (path / name).write_text(content)
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", message], cwd=path, check=True, capture_output=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def state_dir(tmp_path) -> Path:
    path = tmp_path / "hooks"
    path.mkdir()
    return path


@pytest.fixture
def git_repo(tmp_path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    init_git_repo(repo)
    return repo


@pytest.fixture
def app_config(state_dir, git_repo) -> AppConfig:
    return AppConfig(
        storage=StorageConfig(state_dir=str(state_dir)),
        safety=SafetyConfig(hourly_budget_usd=Decimal("10.00"), max_parallel_agents=5),
        rollback=RollbackConfig(repo_path=str(git_repo)),
    )


@pytest.fixture
def bundle(app_config, clock) -> ComponentBundle:
    return ComponentFactory.create(config=app_config, clock=clock)


@pytest.fixture
def orchestrator(bundle):
    return bundle.orchestrator


@pytest.fixture
def governor(bundle):
    return bundle.governor
