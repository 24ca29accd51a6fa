"""Git operations used by the rollback coordinator.

Thin wrappers over ``git`` that resolve refs, diff commit ranges and
hard-reset the working tree. Every failure surfaces as GitOperationError
carrying git's own message.
"""

from __future__ import annotations

import logging

from overseer.core.exceptions import GitOperationError
from overseer.tools.shell import run_command

logger = logging.getLogger("overseer.tools.git_ops")


def _git(repo_path: str, *args: str) -> str:
    result = run_command(["git", *args], cwd=repo_path)
    if not result.success:
        raise GitOperationError(f"git {args[0]} failed: {result.message}")
    return result.stdout


def is_git_repo(path: str) -> bool:
    """Check if the given path is inside a git work tree."""
    result = run_command(["git", "rev-parse", "--is-inside-work-tree"], cwd=path)
    return result.success and result.stdout.strip() == "true"


def resolve_ref(repo_path: str, ref: str) -> str:
    """Resolve a ref (``HEAD~1``, a tag, a hash) to a full commit hash."""
    return _git(repo_path, "rev-parse", "--verify", f"{ref}^{{commit}}").strip()


def head_commit(repo_path: str) -> str:
    return resolve_ref(repo_path, "HEAD")


def changed_files(repo_path: str, from_ref: str, to_ref: str) -> list[str]:
    """Files that differ between two commits."""
    output = _git(repo_path, "diff", "--name-only", from_ref, to_ref)
    return [line for line in output.splitlines() if line.strip()]


def count_commits(repo_path: str, from_ref: str, to_ref: str) -> int:
    """Number of commits reachable from to_ref but not from from_ref."""
    output = _git(repo_path, "rev-list", "--count", f"{from_ref}..{to_ref}")
    return int(output.strip() or 0)


def reset_hard(repo_path: str, ref: str) -> None:
    _git(repo_path, "reset", "--hard", ref)
    logger.info("Reset %s to %s", repo_path, ref[:8])


class GitVersionControl:
    """Version-control collaborator bound to one repository."""

    def __init__(self, repo_path: str):
        self.repo_path = repo_path

    def head(self) -> str:
        return head_commit(self.repo_path)

    def resolve(self, ref: str) -> str:
        return resolve_ref(self.repo_path, ref)

    def changed_files(self, from_ref: str, to_ref: str) -> list[str]:
        return changed_files(self.repo_path, from_ref, to_ref)

    def count_commits(self, from_ref: str, to_ref: str) -> int:
        return count_commits(self.repo_path, from_ref, to_ref)

    def reset_hard(self, ref: str) -> None:
        reset_hard(self.repo_path, ref)
