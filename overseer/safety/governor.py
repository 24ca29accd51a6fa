"""Safety Governor: one facade over the five safety components.

Callers consult it before spending or spawning work and report back
through it. Escalation stays advisory here: nothing is requested or
cancelled on the caller's behalf.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Optional

from overseer.core.models import (
    ActiveAgent,
    ApprovalCategory,
    ApprovalRequest,
    ApprovalState,
    ApprovalStatusInfo,
    BudgetInfo,
    Checkpoint,
    CostEntry,
    IterationInfo,
    RollbackResult,
    SafetyReport,
)
from overseer.safety.admission import AdmissionController
from overseer.safety.approvals import ApprovalWorkflow
from overseer.safety.budget import Amount, BudgetLedger, to_decimal
from overseer.safety.iteration_guard import IterationGuard
from overseer.safety.rollback import RollbackCoordinator

logger = logging.getLogger("overseer.safety.governor")


class SafetyGovernor:
    def __init__(
        self,
        iterations: IterationGuard,
        budget: BudgetLedger,
        admission: AdmissionController,
        approvals: ApprovalWorkflow,
        rollback: RollbackCoordinator,
    ):
        self.iterations = iterations
        self.budget = budget
        self.admission = admission
        self.approvals = approvals
        self.rollback = rollback

    # -- Iterations ---------------------------------------------------------

    def check_iteration_limit(self, task_id: str) -> bool:
        return self.iterations.check_iteration_limit(task_id)

    def increment_iteration(self, task_id: str) -> int:
        return self.iterations.increment_iteration(task_id)

    def get_iteration_info(self, task_id: str) -> IterationInfo:
        return self.iterations.get_iteration_info(task_id)

    def reset_iterations(self, task_id: str) -> IterationInfo:
        return self.iterations.reset_iterations(task_id)

    # -- Budget -------------------------------------------------------------

    def check_budget(self, estimate: Amount = Decimal("0")) -> bool:
        return self.budget.check_budget(estimate)

    def record_cost(
        self,
        amount: Amount,
        description: str,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> CostEntry:
        return self.budget.record_cost(amount, description, task_id=task_id, agent_id=agent_id)

    def get_budget_status(self) -> BudgetInfo:
        return self.budget.get_budget_status()

    def resume_budget(self, note: Optional[str] = None) -> BudgetInfo:
        return self.budget.resume(note)

    # -- Admission ----------------------------------------------------------

    def check_parallel_agents(self) -> bool:
        return self.admission.check_parallel_agents()

    def register_agent(self, agent_id: str, agent_type: str, task_id: Optional[str] = None) -> ActiveAgent:
        return self.admission.register_agent(agent_id, agent_type, task_id=task_id)

    def unregister_agent(self, agent_id: str) -> bool:
        return self.admission.unregister_agent(agent_id)

    def get_active_agent_count(self) -> int:
        return self.admission.get_active_agent_count()

    def list_active_agents(self) -> list[ActiveAgent]:
        return self.admission.list_active_agents()

    # -- Approvals ----------------------------------------------------------

    def request_approval(
        self,
        reason: str,
        context: Optional[dict[str, Any]] = None,
        task_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        priority: int = 1,
        category: Optional[ApprovalCategory] = None,
    ) -> ApprovalRequest:
        return self.approvals.request_approval(
            reason, context, task_id=task_id, agent_id=agent_id,
            priority=priority, category=category,
        )

    def get_approval_status(self, request_id: str) -> ApprovalStatusInfo:
        return self.approvals.get_approval_status(request_id)

    def list_pending_approvals(self) -> list[ApprovalRequest]:
        return self.approvals.list_pending_approvals()

    def resolve_approval(
        self,
        request_id: str,
        approved: bool,
        reviewer_notes: Optional[str] = None,
    ) -> ApprovalRequest:
        """Resolve a request and apply what an approval unlocks.

        Approved budget requests resume the ledger; approved iteration
        requests linked to a task reset that task's counter. The linked
        task is checked before the decision is recorded, so a failed side
        effect never consumes the one-time resolution.
        """
        if approved:
            pending = self.approvals.get_request(request_id)
            if pending.category == ApprovalCategory.ITERATION and pending.task_id:
                self.iterations.get_iteration_info(pending.task_id)

        request = self.approvals.resolve_approval(request_id, approved, reviewer_notes)
        if request.status != ApprovalState.APPROVED:
            return request

        if request.category == ApprovalCategory.BUDGET:
            self.budget.resume(note=f"approval {request.id}")
        elif request.category == ApprovalCategory.ITERATION and request.task_id:
            self.iterations.reset_iterations(request.task_id)
        return request

    def request_iteration_approval(self, task_id: str, priority: int = 2) -> ApprovalRequest:
        """Ask a human whether an escalated task may keep retrying."""
        info = self.iterations.get_iteration_info(task_id)
        return self.approvals.request_approval(
            f"Task {task_id} reached iteration limit "
            f"({info.current_iteration}/{info.max_iterations})",
            context={
                "current_iteration": info.current_iteration,
                "max_iterations": info.max_iterations,
            },
            task_id=task_id,
            priority=priority,
            category=ApprovalCategory.ITERATION,
        )

    # -- Rollback -----------------------------------------------------------

    def trigger_rollback(self, reason: str, target_ref: Optional[str] = None) -> RollbackResult:
        return self.rollback.trigger_rollback(reason, target_ref=target_ref)

    def mark_checkpoint(self, ref: str = "HEAD", note: Optional[str] = None) -> Checkpoint:
        return self.rollback.mark_checkpoint(ref, note=note)

    def list_rollbacks(self, limit: Optional[int] = None) -> list[RollbackResult]:
        return self.rollback.list_rollbacks(limit)

    # -- Combined -----------------------------------------------------------

    def check_limits(
        self,
        task_id: Optional[str] = None,
        cost_estimate: Amount = Decimal("0"),
    ) -> SafetyReport:
        """Check iteration, budget and admission limits in one call."""
        issues: list[str] = []
        cost_estimate = to_decimal(cost_estimate)

        iteration = None
        if task_id is not None:
            iteration = self.iterations.get_iteration_info(task_id)
            if iteration.limit_reached:
                issues.append(
                    f"Iteration limit reached ({iteration.current_iteration}/{iteration.max_iterations})"
                )

        budget = self.budget.get_budget_status()
        if budget.is_paused:
            issues.append(f"Budget paused: {budget.pause_reason}")
        elif not self.budget.check_budget(cost_estimate):
            issues.append(
                f"Cost estimate ${cost_estimate} exceeds remaining budget ${budget.remaining_budget}"
            )

        active = self.admission.get_active_agent_count()
        can_spawn = self.admission.check_parallel_agents()
        if not can_spawn:
            issues.append(
                f"Max parallel agents reached ({active}/{self.admission.max_parallel_agents})"
            )

        if issues:
            logger.warning("Safety limits: %s", "; ".join(issues))
        return SafetyReport(
            all_clear=not issues,
            issues=issues,
            iteration=iteration,
            budget=budget,
            active_agents=active,
            max_parallel_agents=self.admission.max_parallel_agents,
            can_spawn_agent=can_spawn,
        )
