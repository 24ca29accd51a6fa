"""All Pydantic data models for Overseer.

Defines the records persisted by the task, convoy and safety stores plus
the value objects returned by Orchestrator and SafetyGovernor operations.
"""

from __future__ import annotations

import enum
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, computed_field


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"


class ConvoyStatus(str, enum.Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkerClass(str, enum.Enum):
    SCRIPT = "script"
    SCENE = "scene"
    ASSET = "asset"
    EYES = "eyes"
    EVALUATOR = "evaluator"
    MAYOR = "mayor"  # coordinator; never executes tasks


class ApprovalState(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class ApprovalCategory(str, enum.Enum):
    BUDGET = "budget"
    ITERATION = "iteration"
    ROLLBACK = "rollback"
    OTHER = "other"


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

class TaskConfig(BaseModel):
    """Creation request for a task."""
    name: str = Field(min_length=1)
    description: str = ""
    milestone: Optional[str] = None
    convoy_id: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    priority: int = 1
    deliverable: Optional[str] = None
    success_criteria: list[str] = Field(default_factory=list)
    specification: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    estimated_minutes: int = 15
    max_iterations: Optional[int] = Field(default=None, ge=1)


class TaskCompletionResult(BaseModel):
    success: bool = True
    summary: Optional[str] = None
    files_created: list[str] = Field(default_factory=list)
    files_modified: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class TaskHistoryEntry(BaseModel):
    timestamp: datetime = Field(default_factory=_now)
    from_status: Optional[TaskStatus] = None
    to_status: TaskStatus
    worker_class: Optional[WorkerClass] = None
    message: str = ""


class Task(BaseModel):
    id: str
    sequence: int
    name: str
    description: str = ""
    milestone: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    assigned_worker_class: Optional[WorkerClass] = None
    assigned_worker_id: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    priority: int = 1
    deliverable: Optional[str] = None
    success_criteria: list[str] = Field(default_factory=list)
    specification: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)
    estimated_minutes: int = 15
    iteration_count: int = 0
    max_iterations: int = 50
    last_iteration_at: Optional[datetime] = None
    convoy_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_now)
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[TaskCompletionResult] = None
    error_message: Optional[str] = None
    history: list[TaskHistoryEntry] = Field(default_factory=list)
    revision: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


class TaskFilter(BaseModel):
    status: Optional[TaskStatus] = None
    worker_class: Optional[WorkerClass] = None
    convoy_id: Optional[str] = None
    milestone: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    include_completed: bool = True
    offset: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, ge=1)


class FailureOutcome(BaseModel):
    """Result of FailTask: the failed task plus the advisory escalation signal."""
    task: Task
    iteration_count: int
    max_iterations: int
    escalation_required: bool


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


# ---------------------------------------------------------------------------
# Convoys
# ---------------------------------------------------------------------------

class ConvoyConfig(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    milestone: Optional[str] = None
    dependencies: list[str] = Field(default_factory=list)
    task_ids: list[str] = Field(default_factory=list)
    priority: int = 1
    assigned_worker_class: Optional[WorkerClass] = None
    deliverables: list[str] = Field(default_factory=list)
    completion_criteria: list[str] = Field(default_factory=list)


class ConvoyProgress(BaseModel):
    """Derived view over member task statuses. Never persisted."""
    total_tasks: int = 0
    pending_tasks: int = 0
    assigned_tasks: int = 0
    in_progress_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    blocked_tasks: int = 0
    cancelled_tasks: int = 0

    @computed_field
    @property
    def percent_complete(self) -> int:
        if self.total_tasks == 0:
            return 0
        return (self.completed_tasks * 100) // self.total_tasks

    @computed_field
    @property
    def all_tasks_complete(self) -> bool:
        return self.total_tasks > 0 and self.completed_tasks == self.total_tasks

    @computed_field
    @property
    def has_failures(self) -> bool:
        return self.failed_tasks > 0


class Convoy(BaseModel):
    id: str
    sequence: int
    name: str
    description: str = ""
    milestone: Optional[str] = None
    status: ConvoyStatus = ConvoyStatus.PENDING
    task_ids: list[str] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)
    priority: int = 1
    assigned_worker_class: Optional[WorkerClass] = None
    deliverables: list[str] = Field(default_factory=list)
    completion_criteria: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    revision: int = 0
    progress: Optional[ConvoyProgress] = Field(default=None, exclude=True)


class ConvoyFilter(BaseModel):
    status: Optional[ConvoyStatus] = None
    milestone: Optional[str] = None
    include_completed: bool = True
    offset: int = Field(default=0, ge=0)
    limit: Optional[int] = Field(default=None, ge=1)


class ConvoyTaskSummary(BaseModel):
    convoy_id: str
    convoy_name: str
    tasks_by_status: dict[TaskStatus, list[Task]] = Field(default_factory=dict)

    @property
    def active_count(self) -> int:
        return len(self.tasks_by_status.get(TaskStatus.ASSIGNED, [])) + len(
            self.tasks_by_status.get(TaskStatus.IN_PROGRESS, [])
        )


# ---------------------------------------------------------------------------
# Iterations
# ---------------------------------------------------------------------------

class IterationInfo(BaseModel):
    task_id: str
    current_iteration: int
    max_iterations: int
    last_iteration_at: Optional[datetime] = None

    @computed_field
    @property
    def remaining_iterations(self) -> int:
        return max(self.max_iterations - self.current_iteration, 0)

    @computed_field
    @property
    def limit_reached(self) -> bool:
        return self.current_iteration >= self.max_iterations


# ---------------------------------------------------------------------------
# Budget
# ---------------------------------------------------------------------------

class CostEntry(BaseModel):
    model_config = {"frozen": True}

    amount: Decimal
    description: str
    timestamp: datetime = Field(default_factory=_now)
    task_id: Optional[str] = None
    agent_id: Optional[str] = None


class BudgetState(BaseModel):
    """Persisted ledger state (budget.json)."""
    hourly_limit: Decimal = Decimal("10.00")
    window_start: datetime = Field(default_factory=_now)
    spent_this_window: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0")
    is_paused: bool = False
    pause_reason: Optional[str] = None
    paused_at: Optional[datetime] = None


class BudgetInfo(BaseModel):
    """Snapshot returned by GetBudgetStatus."""
    hourly_limit: Decimal
    spent_this_hour: Decimal
    window_start: datetime
    total_spent: Decimal
    is_paused: bool
    pause_reason: Optional[str] = None
    recent_costs: list[CostEntry] = Field(default_factory=list)

    @computed_field
    @property
    def remaining_budget(self) -> Decimal:
        return self.hourly_limit - self.spent_this_hour

    @computed_field
    @property
    def window_end(self) -> datetime:
        return self.window_start + timedelta(hours=1)


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------

class ActiveAgent(BaseModel):
    agent_id: str
    agent_type: str
    started_at: datetime = Field(default_factory=_now)
    task_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------

class ApprovalRequest(BaseModel):
    id: str
    reason: str
    context: dict[str, Any] = Field(default_factory=dict)
    status: ApprovalState = ApprovalState.PENDING
    created_at: datetime = Field(default_factory=_now)
    resolved_at: Optional[datetime] = None
    reviewer_notes: Optional[str] = None
    task_id: Optional[str] = None
    agent_id: Optional[str] = None
    priority: int = Field(default=1, ge=0, le=3)
    category: ApprovalCategory = ApprovalCategory.OTHER


class ApprovalStatusInfo(BaseModel):
    request_id: str
    status: ApprovalState
    reviewer_notes: Optional[str] = None
    resolved_at: Optional[datetime] = None
    time_remaining: Optional[timedelta] = None

    @computed_field
    @property
    def is_resolved(self) -> bool:
        return self.status != ApprovalState.PENDING

    @computed_field
    @property
    def is_approved(self) -> bool:
        return self.status == ApprovalState.APPROVED


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------

class RollbackResult(BaseModel):
    success: bool = False
    reason: str
    rolled_back_from: Optional[str] = None
    rolled_back_to: Optional[str] = None
    changes_reverted: int = 0
    affected_files: list[str] = Field(default_factory=list)
    timestamp: datetime = Field(default_factory=_now)
    error_message: Optional[str] = None


class Checkpoint(BaseModel):
    ref: str
    marked_at: datetime = Field(default_factory=_now)
    note: Optional[str] = None


# ---------------------------------------------------------------------------
# Governor reports
# ---------------------------------------------------------------------------

class SafetyReport(BaseModel):
    """Combined limit check across iteration, budget and admission control."""
    all_clear: bool
    issues: list[str] = Field(default_factory=list)
    iteration: Optional[IterationInfo] = None
    budget: BudgetInfo
    active_agents: int
    max_parallel_agents: int
    can_spawn_agent: bool
