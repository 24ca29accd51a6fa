"""Rollback to a known-good checkpoint.

The actual reversion is delegated to a version-control collaborator; this
module decides the target, reports what changed and keeps the audit log.
It never touches task or convoy state.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Optional, Protocol

from overseer.core.exceptions import ExternalFailureError, ToolError
from overseer.core.models import Checkpoint, RollbackResult
from overseer.storage.json_store import JsonDocument, JsonlLog

logger = logging.getLogger("overseer.safety.rollback")


class VersionControl(Protocol):
    def head(self) -> str: ...
    def resolve(self, ref: str) -> str: ...
    def changed_files(self, from_ref: str, to_ref: str) -> list[str]: ...
    def count_commits(self, from_ref: str, to_ref: str) -> int: ...
    def reset_hard(self, ref: str) -> None: ...


class RollbackCoordinator:
    def __init__(
        self,
        safety_dir: Path,
        vcs: VersionControl,
        commits_to_revert: int = 1,
        log_limit: int = 100,
        raise_on_failure: bool = False,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.vcs = vcs
        self.commits_to_revert = commits_to_revert
        self.log_limit = log_limit
        self.raise_on_failure = raise_on_failure
        self._clock = clock or (lambda: datetime.now(UTC))
        self._lock = threading.Lock()
        self._log: JsonlLog[RollbackResult] = JsonlLog(
            safety_dir / "rollback-log.jsonl", RollbackResult,
        )
        self._checkpoint: JsonDocument[Checkpoint] = JsonDocument(
            safety_dir / "checkpoint.json", Checkpoint,
        )

    def mark_checkpoint(self, ref: str = "HEAD", note: Optional[str] = None) -> Checkpoint:
        """Record ``ref`` (resolved to a commit) as the known-good state."""
        commit = self.vcs.resolve(ref)
        checkpoint = Checkpoint(ref=commit, marked_at=self._clock(), note=note)
        with self._lock:
            self._checkpoint.save(checkpoint)
        logger.info("Checkpoint marked at %s", commit[:8])
        return checkpoint

    def get_checkpoint(self) -> Optional[Checkpoint]:
        return self._checkpoint.load()

    def _target_ref(self, explicit: Optional[str]) -> str:
        if explicit:
            return explicit
        checkpoint = self._checkpoint.load()
        if checkpoint is not None:
            return checkpoint.ref
        return f"HEAD~{self.commits_to_revert}"

    def trigger_rollback(self, reason: str, target_ref: Optional[str] = None) -> RollbackResult:
        """Revert the work product and log the attempt, successful or not."""
        logger.warning("Rollback triggered: %s", reason)
        result = RollbackResult(reason=reason, timestamp=self._clock())

        with self._lock:
            try:
                current = self.vcs.head()
                result.rolled_back_from = current
                target = self.vcs.resolve(self._target_ref(target_ref))
                result.rolled_back_to = target
                result.affected_files = self.vcs.changed_files(target, current)
                result.changes_reverted = self.vcs.count_commits(target, current)
                self.vcs.reset_hard(target)
                result.success = True
            except ToolError as e:
                result.success = False
                result.error_message = str(e)
                logger.error("Rollback failed: %s", e)
            self._log.append(result)

        if result.success:
            logger.info(
                "Rolled back %d commit(s) %s -> %s (%d files)",
                result.changes_reverted,
                (result.rolled_back_from or "")[:8],
                (result.rolled_back_to or "")[:8],
                len(result.affected_files),
            )
        elif self.raise_on_failure:
            raise ExternalFailureError(f"Rollback failed: {result.error_message}")
        return result

    def list_rollbacks(self, limit: Optional[int] = None) -> list[RollbackResult]:
        """Most recent rollback attempts, oldest first."""
        return self._log.read(limit=limit or self.log_limit)
