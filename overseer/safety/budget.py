"""Hourly spend ledger.

Tracks spend in fixed one-hour windows that roll forward once the current
window has elapsed. Every cost is recorded (the JSONL log is the audit
trail); exceeding the hourly limit only flips a sticky pause flag that an
operator clears with ``resume``.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Optional, Union

from overseer.core.models import BudgetInfo, BudgetState, CostEntry
from overseer.storage.json_store import JsonDocument, JsonlLog

logger = logging.getLogger("overseer.safety.budget")

WINDOW = timedelta(hours=1)

Amount = Union[Decimal, int, float, str]


def to_decimal(value: Amount) -> Decimal:
    """Convert user input to Decimal without float artefacts.

    Raises:
        ValueError: If the value is not a finite number.
    """
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"Not a valid amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Amount must be finite, got {value!r}")
    return amount


class BudgetLedger:
    def __init__(
        self,
        safety_dir: Path,
        hourly_limit: Amount = Decimal("10.00"),
        history_hours: float = 24.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._clock = clock or (lambda: datetime.now(UTC))
        self._history = timedelta(hours=history_hours)
        self._lock = threading.RLock()
        self._document: JsonDocument[BudgetState] = JsonDocument(
            safety_dir / "budget.json", BudgetState,
        )
        self._costs: JsonlLog[CostEntry] = JsonlLog(safety_dir / "costs.jsonl", CostEntry)

        state = self._document.load()
        if state is None:
            state = BudgetState(window_start=self._clock())
        # Configured limit always wins over whatever was persisted
        state.hourly_limit = to_decimal(hourly_limit)
        self._state = state
        self._document.save(self._state)

    # -- internals (caller holds the lock) ----------------------------------

    def _roll_window(self, now: datetime) -> bool:
        if now < self._state.window_start + WINDOW:
            return False
        logger.info(
            "Budget window rolled: spent $%s in window starting %s",
            self._state.spent_this_window, self._state.window_start.isoformat(),
        )
        self._state.window_start = now
        self._state.spent_this_window = Decimal("0")
        return True

    # -- public API ---------------------------------------------------------

    def check_budget(self, estimate: Amount = Decimal("0")) -> bool:
        """True iff the estimate fits in what is left this window and not paused."""
        estimate = to_decimal(estimate)
        with self._lock:
            if self._roll_window(self._clock()):
                self._document.save(self._state)
            if self._state.is_paused:
                return False
            return estimate <= self._state.hourly_limit - self._state.spent_this_window

    def record_cost(
        self,
        amount: Amount,
        description: str,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> CostEntry:
        """Roll, append, accumulate and pause-check as one atomic step."""
        amount = to_decimal(amount)
        if amount < 0:
            raise ValueError(f"Cost amount must be non-negative, got {amount}")

        with self._lock:
            now = self._clock()
            self._roll_window(now)
            entry = CostEntry(
                amount=amount,
                description=description,
                timestamp=now,
                task_id=task_id,
                agent_id=agent_id,
            )
            self._costs.append(entry)
            self._state.spent_this_window += amount
            self._state.total_spent += amount

            if (
                not self._state.is_paused
                and self._state.spent_this_window > self._state.hourly_limit
            ):
                self._state.is_paused = True
                self._state.paused_at = now
                self._state.pause_reason = (
                    f"Hourly budget limit (${self._state.hourly_limit}) exceeded "
                    f"at {now.isoformat()}"
                )
                logger.warning(
                    "Budget paused: $%s spent against $%s limit",
                    self._state.spent_this_window, self._state.hourly_limit,
                )
            self._document.save(self._state)

        logger.debug("Cost recorded: $%s %s (task=%s)", amount, description, task_id)
        return entry

    def get_budget_status(self) -> BudgetInfo:
        with self._lock:
            now = self._clock()
            if self._roll_window(now):
                self._document.save(self._state)
            state = self._state.model_copy(deep=True)
        cutoff = now - self._history
        recent = self._costs.read(where=lambda e: e.timestamp >= cutoff)
        return BudgetInfo(
            hourly_limit=state.hourly_limit,
            spent_this_hour=state.spent_this_window,
            window_start=state.window_start,
            total_spent=state.total_spent,
            is_paused=state.is_paused,
            pause_reason=state.pause_reason,
            recent_costs=recent,
        )

    def resume(self, note: Optional[str] = None) -> BudgetInfo:
        """Operator action: clear the pause flag."""
        with self._lock:
            was_paused = self._state.is_paused
            self._state.is_paused = False
            self._state.pause_reason = None
            self._state.paused_at = None
            self._document.save(self._state)
        if was_paused:
            logger.info("Budget resumed%s", f": {note}" if note else "")
        return self.get_budget_status()
