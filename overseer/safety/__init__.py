"""Safety controls: iteration ceilings, spend, admission, approvals, rollback."""

from overseer.safety.admission import AdmissionController
from overseer.safety.approvals import ApprovalWorkflow
from overseer.safety.budget import BudgetLedger
from overseer.safety.governor import SafetyGovernor
from overseer.safety.iteration_guard import IterationGuard
from overseer.safety.rollback import RollbackCoordinator

__all__ = [
    "AdmissionController",
    "ApprovalWorkflow",
    "BudgetLedger",
    "IterationGuard",
    "RollbackCoordinator",
    "SafetyGovernor",
]
