"""Human-approval requests.

Requests are created pending and resolved exactly once, either by a
reviewer (approved/rejected) or by time (expired). Expiry is applied
lazily whenever a request is read.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional

from overseer.core.exceptions import InvalidTransitionError, NotFoundError
from overseer.core.models import (
    ApprovalCategory,
    ApprovalRequest,
    ApprovalState,
    ApprovalStatusInfo,
)
from overseer.storage.json_store import JsonRecordStore

logger = logging.getLogger("overseer.safety.approvals")


def infer_category(reason: str) -> ApprovalCategory:
    """Guess the category from keywords in the reason text."""
    lowered = reason.lower()
    for category in (ApprovalCategory.BUDGET, ApprovalCategory.ITERATION, ApprovalCategory.ROLLBACK):
        if category.value in lowered:
            return category
    return ApprovalCategory.OTHER


class ApprovalWorkflow:
    def __init__(
        self,
        approvals_dir: Path,
        ttl_hours: float = 24.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._records: JsonRecordStore[ApprovalRequest] = JsonRecordStore(
            approvals_dir, ApprovalRequest, prefix="approval",
        )

    def _new_id(self, now: datetime) -> str:
        return f"approval-{now:%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:8]}"

    def _expire_if_due(self, request: ApprovalRequest, now: datetime) -> ApprovalRequest:
        # Caller holds the lock
        if request.status == ApprovalState.PENDING and now >= request.created_at + self.ttl:
            request.status = ApprovalState.EXPIRED
            request.resolved_at = now
            request = self._records.put(request)
            logger.info("Approval %s expired unresolved", request.id)
        return request

    def _require(self, request_id: str) -> ApprovalRequest:
        request = self._records.get(request_id)
        if request is None:
            raise NotFoundError("approval", request_id)
        return request

    def request_approval(
        self,
        reason: str,
        context: Optional[dict[str, Any]] = None,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        priority: int = 1,
        category: Optional[ApprovalCategory] = None,
    ) -> ApprovalRequest:
        now = self._clock()
        request = ApprovalRequest(
            id=self._new_id(now),
            reason=reason,
            context=context or {},
            created_at=now,
            task_id=task_id,
            agent_id=agent_id,
            priority=priority,
            category=category or infer_category(reason),
        )
        with self._records.lock:
            stored = self._records.put(request)
        logger.info(
            "Approval requested: %s [%s, priority %d] %s",
            stored.id, stored.category.value, stored.priority, reason,
        )
        return stored

    def get_request(self, request_id: str) -> ApprovalRequest:
        with self._records.lock:
            return self._expire_if_due(self._require(request_id), self._clock())

    def get_approval_status(self, request_id: str) -> ApprovalStatusInfo:
        now = self._clock()
        with self._records.lock:
            request = self._expire_if_due(self._require(request_id), now)
        remaining = None
        if request.status == ApprovalState.PENDING:
            remaining = request.created_at + self.ttl - now
        return ApprovalStatusInfo(
            request_id=request.id,
            status=request.status,
            reviewer_notes=request.reviewer_notes,
            resolved_at=request.resolved_at,
            time_remaining=remaining,
        )

    def list_pending_approvals(self) -> list[ApprovalRequest]:
        """Pending requests, highest priority first, oldest first within a priority."""
        now = self._clock()
        with self._records.lock:
            requests = [self._expire_if_due(r, now) for r in self._records.all()]
        pending = [r for r in requests if r.status == ApprovalState.PENDING]
        pending.sort(key=lambda r: (-r.priority, r.created_at))
        return pending

    def resolve_approval(
        self,
        request_id: str,
        approved: bool,
        reviewer_notes: Optional[str] = None,
    ) -> ApprovalRequest:
        """Resolve a pending request once. Later attempts leave it untouched."""
        now = self._clock()
        target = ApprovalState.APPROVED if approved else ApprovalState.REJECTED
        with self._records.lock:
            request = self._expire_if_due(self._require(request_id), now)
            if request.status != ApprovalState.PENDING:
                raise InvalidTransitionError(
                    request_id,
                    request.status.value,
                    target.value,
                    message=f"Approval '{request_id}' is already {request.status.value}",
                )
            request.status = target
            request.resolved_at = now
            request.reviewer_notes = reviewer_notes
            stored = self._records.put(request)
        logger.info("Approval %s %s", request_id, target.value)
        return stored
