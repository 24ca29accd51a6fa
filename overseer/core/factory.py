"""Component factory for Overseer.

Builds every store and service once, from config, and hands them out as a
bundle. Components receive their collaborators through their constructors;
nothing is looked up from a global registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from overseer.core.config import AppConfig, load_config
from overseer.orchestration.convoy_store import ConvoyStore
from overseer.orchestration.orchestrator import Orchestrator
from overseer.orchestration.task_store import TaskStore
from overseer.safety.admission import AdmissionController
from overseer.safety.approvals import ApprovalWorkflow
from overseer.safety.budget import BudgetLedger
from overseer.safety.governor import SafetyGovernor
from overseer.safety.iteration_guard import IterationGuard
from overseer.safety.rollback import RollbackCoordinator, VersionControl
from overseer.tools.git_ops import GitVersionControl

logger = logging.getLogger("overseer.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components."""

    config: AppConfig
    state_root: Path
    task_store: TaskStore
    convoy_store: ConvoyStore
    orchestrator: Orchestrator
    governor: SafetyGovernor


class ComponentFactory:
    """Factory for creating and wiring Overseer components.

    Usage:
        bundle = ComponentFactory.create(env="test")
        bundle.orchestrator.create_task(TaskConfig(name="Build level"))
    """

    @staticmethod
    def create(
        config: Optional[AppConfig] = None,
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        state_dir: Optional[Path] = None,
        vcs: Optional[VersionControl] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> ComponentBundle:
        """Create and wire all components.

        Args:
            config: Pre-built config. Loaded from the YAML cascade when omitted.
            config_dir: Path to config/ directory. Default: project root/config.
            env: Environment name for config overlay (e.g., "test").
            state_dir: Overrides ``storage.state_dir``.
            vcs: Version-control collaborator for rollbacks. Defaults to git
                on ``rollback.repo_path``.
            clock: Time source shared by every component (tests inject one).
        """
        if config is None:
            config = load_config(config_dir=config_dir, env=env)
        state_root = Path(state_dir) if state_dir is not None else config.storage.root
        state_root.mkdir(parents=True, exist_ok=True)
        safety_dir = state_root / "safety"
        logger.info("Initializing components (state root %s)", state_root)

        # --- Orchestration ---
        task_store = TaskStore(state_root)
        convoy_store = ConvoyStore(state_root)
        iterations = IterationGuard(task_store, clock=clock)
        orchestrator = Orchestrator(
            task_store,
            convoy_store,
            iterations,
            default_max_iterations=config.orchestration.default_max_iterations,
            max_iterations_ceiling=config.safety.max_iterations_per_task,
            clock=clock,
        )

        # --- Safety ---
        budget = BudgetLedger(
            safety_dir,
            hourly_limit=config.safety.hourly_budget_usd,
            history_hours=config.safety.cost_history_hours,
            clock=clock,
        )
        admission = AdmissionController(
            safety_dir,
            max_parallel_agents=config.safety.max_parallel_agents,
            clock=clock,
        )
        approvals = ApprovalWorkflow(
            state_root / "approvals",
            ttl_hours=config.safety.approval_ttl_hours,
            clock=clock,
        )
        rollback = RollbackCoordinator(
            safety_dir,
            vcs or GitVersionControl(config.rollback.repo_path),
            commits_to_revert=config.rollback.commits_to_revert,
            log_limit=config.safety.rollback_log_limit,
            raise_on_failure=config.rollback.raise_on_failure,
            clock=clock,
        )
        governor = SafetyGovernor(iterations, budget, admission, approvals, rollback)

        logger.info(
            "All components initialized (%d tasks, %d convoys)",
            len(task_store.all()), len(convoy_store.all()),
        )
        return ComponentBundle(
            config=config,
            state_root=state_root,
            task_store=task_store,
            convoy_store=convoy_store,
            orchestrator=orchestrator,
            governor=governor,
        )
