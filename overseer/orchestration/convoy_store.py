"""Durable convoy records (``<state_dir>/convoys/<convoy-id>.json``)."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from overseer.core.exceptions import ConflictError, NotFoundError
from overseer.core.models import Convoy, ConvoyFilter, ConvoyStatus
from overseer.storage.json_store import JsonRecordStore

_TERMINAL = {ConvoyStatus.COMPLETED, ConvoyStatus.FAILED, ConvoyStatus.CANCELLED}


class ConvoyStore:
    def __init__(self, state_root: Path):
        self._records: JsonRecordStore[Convoy] = JsonRecordStore(
            state_root / "convoys", Convoy, prefix="convoy",
        )

    @property
    def lock(self):
        return self._records.lock

    def new_id(self) -> tuple[str, int]:
        return self._records.next_id()

    def get(self, convoy_id: str) -> Optional[Convoy]:
        return self._records.get(convoy_id)

    def require(self, convoy_id: str, expected_revision: Optional[int] = None) -> Convoy:
        convoy = self._records.get(convoy_id)
        if convoy is None:
            raise NotFoundError("convoy", convoy_id)
        if expected_revision is not None and convoy.revision != expected_revision:
            raise ConflictError(
                f"Convoy '{convoy_id}' is at revision {convoy.revision}, "
                f"expected {expected_revision}"
            )
        return convoy

    def all(self) -> list[Convoy]:
        return sorted(self._records.all(), key=lambda c: c.sequence)

    def snapshot(self) -> dict[str, Convoy]:
        with self.lock:
            return {c.id: c for c in self._records.all()}

    def insert(self, convoy: Convoy) -> Convoy:
        return self._records.put(convoy)

    def save(self, convoy: Convoy) -> Convoy:
        with self.lock:
            convoy.revision += 1
            return self._records.put(convoy)

    def query(self, convoy_filter: ConvoyFilter) -> list[Convoy]:
        convoys = []
        for convoy in self.all():
            if convoy_filter.status is not None and convoy.status != convoy_filter.status:
                continue
            if convoy_filter.milestone is not None and convoy.milestone != convoy_filter.milestone:
                continue
            if not convoy_filter.include_completed and convoy.status in _TERMINAL:
                continue
            convoys.append(convoy)
        convoys.sort(key=lambda c: (-c.priority, c.sequence))
        end = None if convoy_filter.limit is None else convoy_filter.offset + convoy_filter.limit
        return convoys[convoy_filter.offset:end]
