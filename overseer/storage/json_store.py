"""File-backed persistence for Overseer state.

One JSON file per record (tasks, convoys, approvals), single-document JSON
for ledger/registry state, and append-only JSONL for cost and rollback
history. Writes go through a temp file and ``os.replace`` so a crash never
leaves a half-written record behind.
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Callable, Generic, Optional, TypeVar

from pydantic import BaseModel, ValidationError

from overseer.core.exceptions import StorageError

logger = logging.getLogger("overseer.storage.json_store")

ModelT = TypeVar("ModelT", bound=BaseModel)


def atomic_write_text(path: Path, content: str) -> None:
    """Write content to path via a sibling temp file."""
    tmp_path = path.with_name(path.name + ".tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(content, encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        if tmp_path.exists():
            tmp_path.unlink(missing_ok=True)
        raise StorageError(f"Failed to write {path}: {e}") from e


class JsonRecordStore(Generic[ModelT]):
    """Directory of ``<id>.json`` records with an in-memory cache.

    All mutation goes through ``lock``; callers that read-modify-write
    hold it across the whole sequence. ``get``/``all`` return deep copies so
    a reader never observes a record mid-update.
    """

    def __init__(self, directory: Path, model_cls: type[ModelT], prefix: str):
        self.directory = directory
        self.model_cls = model_cls
        self.prefix = prefix
        self.lock = threading.RLock()
        self._records: dict[str, ModelT] = {}
        self._counter = 0
        self.directory.mkdir(parents=True, exist_ok=True)
        self._load()

    def _load(self) -> None:
        pattern = re.compile(rf"^{re.escape(self.prefix)}-(\d+)$")
        for path in sorted(self.directory.glob(f"{self.prefix}-*.json")):
            try:
                record = self.model_cls.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as e:
                logger.warning("Skipping unreadable record %s: %s", path, e)
                continue
            record_id = getattr(record, "id", path.stem)
            self._records[record_id] = record
            match = pattern.match(record_id)
            if match:
                self._counter = max(self._counter, int(match.group(1)))
        logger.debug("Loaded %d %s record(s) from %s", len(self._records), self.prefix, self.directory)

    def next_id(self) -> tuple[str, int]:
        """Reserve the next sequential identifier (``task-001`` style)."""
        with self.lock:
            self._counter += 1
            return f"{self.prefix}-{self._counter:03d}", self._counter

    def get(self, record_id: str) -> Optional[ModelT]:
        with self.lock:
            record = self._records.get(record_id)
            return record.model_copy(deep=True) if record is not None else None

    def all(self) -> list[ModelT]:
        with self.lock:
            return [r.model_copy(deep=True) for r in self._records.values()]

    def put(self, record: ModelT) -> ModelT:
        """Persist a record and refresh the cache. Returns a detached copy."""
        record_id = getattr(record, "id")
        with self.lock:
            path = self.directory / f"{record_id}.json"
            atomic_write_text(path, record.model_dump_json(indent=2))
            self._records[record_id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    def __len__(self) -> int:
        with self.lock:
            return len(self._records)


class JsonDocument(Generic[ModelT]):
    """A single JSON document holding one model."""

    def __init__(self, path: Path, model_cls: type[ModelT]):
        self.path = path
        self.model_cls = model_cls

    def load(self) -> Optional[ModelT]:
        if not self.path.exists():
            return None
        try:
            return self.model_cls.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.warning("Failed to load %s, starting fresh: %s", self.path, e)
            return None

    def save(self, model: BaseModel) -> None:
        atomic_write_text(self.path, model.model_dump_json(indent=2))


class JsonlLog(Generic[ModelT]):
    """Append-only JSONL log of immutable entries."""

    def __init__(self, path: Path, model_cls: type[ModelT]):
        self.path = path
        self.model_cls = model_cls
        self._lock = threading.Lock()

    def append(self, entry: ModelT) -> None:
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(entry.model_dump_json() + "\n")
            except OSError as e:
                raise StorageError(f"Failed to append to {self.path}: {e}") from e

    def read(
        self,
        where: Optional[Callable[[ModelT], bool]] = None,
        limit: Optional[int] = None,
    ) -> list[ModelT]:
        """Return entries in append order, newest ``limit`` if given."""
        if not self.path.exists():
            return []
        entries: list[ModelT] = []
        with self._lock:
            with open(self.path, encoding="utf-8") as f:
                for lineno, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = self.model_cls.model_validate(json.loads(line))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning("Skipping bad line %d in %s: %s", lineno, self.path, e)
                        continue
                    if where is None or where(entry):
                        entries.append(entry)
        if limit is not None:
            entries = entries[-limit:]
        return entries


