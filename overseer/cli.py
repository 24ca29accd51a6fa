"""CLI entrypoint for Overseer."""

from __future__ import annotations

import functools
import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import click
from pydantic import BaseModel, ValidationError

from overseer.core.exceptions import OverseerError
from overseer.core.factory import ComponentBundle, ComponentFactory
from overseer.core.models import (
    ApprovalCategory,
    Convoy,
    ConvoyConfig,
    ConvoyFilter,
    ConvoyStatus,
    TaskCompletionResult,
    TaskConfig,
    TaskFilter,
    TaskStatus,
    WorkerClass,
)

_WORKER_CLASSES = [w.value for w in WorkerClass]


def _setup_logging(verbose: bool = False, env: Optional[str] = None) -> None:
    """Apply logging configuration from config/default.yaml."""
    from overseer.core.config import load_config

    try:
        config = load_config(env=env)
        level_name = config.logging.level
        fmt = config.logging.format
    except OverseerError:
        level_name = "INFO"
        fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(level=level, format=fmt, stream=sys.stderr)


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, ensure_ascii=True))


def _dump(model: BaseModel) -> dict[str, Any]:
    data = model.model_dump(mode="json")
    if isinstance(model, Convoy) and model.progress is not None:
        data["progress"] = model.progress.model_dump(mode="json")
    return data


def _bundle(ctx: click.Context) -> ComponentBundle:
    """Build components on first use so ``--help`` never touches state."""
    obj = ctx.find_root().obj
    if obj.get("bundle") is None:
        obj["bundle"] = ComponentFactory.create(env=obj.get("env"), state_dir=obj.get("state_dir"))
    return obj["bundle"]


def _domain_errors(func: Callable[..., None]) -> Callable[..., None]:
    """Report domain failures as the structured payload with exit code 1."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> None:
        try:
            func(*args, **kwargs)
        except OverseerError as exc:
            _echo_json(exc.to_payload())
            raise click.exceptions.Exit(1) from exc
        except (ValidationError, ValueError) as exc:
            raise click.ClickException(str(exc)) from exc

    return wrapper


def _parse_context(pairs: tuple[str, ...]) -> dict[str, str]:
    context = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--context")
        context[key] = value
    return context


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Enable verbose (DEBUG) logging.")
@click.option("--env", required=False, default=None, help="Optional config overlay environment.")
@click.option(
    "--state-dir",
    required=False,
    default=None,
    type=click.Path(file_okay=False, path_type=Path),
    help="Override storage.state_dir.",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, env: Optional[str], state_dir: Optional[Path]) -> None:
    """Overseer task orchestration and safety governance."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["env"] = env
    ctx.obj["state_dir"] = state_dir
    _setup_logging(verbose=verbose, env=env)


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------

@cli.group()
def task() -> None:
    """Create and drive tasks."""


@task.command("create")
@click.option("--name", required=True)
@click.option("--description", default="")
@click.option("--milestone", default=None)
@click.option("--convoy", "convoy_id", default=None, help="Convoy to add the task to.")
@click.option("--depends-on", multiple=True, help="Prerequisite task id (repeatable).")
@click.option("--priority", type=int, default=None, help="Higher runs first.")
@click.option("--deliverable", default=None)
@click.option("--criterion", multiple=True, help="Success criterion (repeatable).")
@click.option("--tag", multiple=True)
@click.option("--max-iterations", type=int, default=None)
@click.option("--estimated-minutes", type=int, default=15, show_default=True)
@click.pass_context
@_domain_errors
def task_create(
    ctx: click.Context,
    name: str,
    description: str,
    milestone: Optional[str],
    convoy_id: Optional[str],
    depends_on: tuple[str, ...],
    priority: Optional[int],
    deliverable: Optional[str],
    criterion: tuple[str, ...],
    tag: tuple[str, ...],
    max_iterations: Optional[int],
    estimated_minutes: int,
) -> None:
    """Create a task (Blocked if prerequisites are not completed)."""
    bundle = _bundle(ctx)
    config = TaskConfig(
        name=name,
        description=description,
        milestone=milestone,
        convoy_id=convoy_id,
        dependencies=list(depends_on),
        priority=priority if priority is not None else bundle.config.orchestration.default_priority,
        deliverable=deliverable,
        success_criteria=list(criterion),
        tags=list(tag),
        max_iterations=max_iterations,
        estimated_minutes=estimated_minutes,
    )
    _echo_json(_dump(bundle.orchestrator.create_task(config)))


@task.command("assign")
@click.argument("task_id")
@click.option("--worker-class", required=True, type=click.Choice(_WORKER_CLASSES))
@click.option("--expected-revision", type=int, default=None)
@click.pass_context
@_domain_errors
def task_assign(ctx: click.Context, task_id: str, worker_class: str, expected_revision: Optional[int]) -> None:
    """Assign a Pending or Blocked task to a worker class."""
    t = _bundle(ctx).orchestrator.assign_task(task_id, worker_class, expected_revision=expected_revision)
    _echo_json(_dump(t))


@task.command("start")
@click.argument("task_id")
@click.option("--worker-id", default=None)
@click.option("--expected-revision", type=int, default=None)
@click.pass_context
@_domain_errors
def task_start(ctx: click.Context, task_id: str, worker_id: Optional[str], expected_revision: Optional[int]) -> None:
    t = _bundle(ctx).orchestrator.start_task(task_id, worker_id, expected_revision=expected_revision)
    _echo_json(_dump(t))


@task.command("complete")
@click.argument("task_id")
@click.option("--summary", default=None)
@click.option("--file-created", multiple=True)
@click.option("--file-modified", multiple=True)
@click.option("--warning", multiple=True)
@click.option("--expected-revision", type=int, default=None)
@click.pass_context
@_domain_errors
def task_complete(
    ctx: click.Context,
    task_id: str,
    summary: Optional[str],
    file_created: tuple[str, ...],
    file_modified: tuple[str, ...],
    warning: tuple[str, ...],
    expected_revision: Optional[int],
) -> None:
    """Complete an InProgress task and unblock its dependents."""
    result = TaskCompletionResult(
        summary=summary,
        files_created=list(file_created),
        files_modified=list(file_modified),
        warnings=list(warning),
    )
    t = _bundle(ctx).orchestrator.complete_task(task_id, result, expected_revision=expected_revision)
    _echo_json(_dump(t))


@task.command("fail")
@click.argument("task_id")
@click.option("--reason", required=True)
@click.option("--expected-revision", type=int, default=None)
@click.pass_context
@_domain_errors
def task_fail(ctx: click.Context, task_id: str, reason: str, expected_revision: Optional[int]) -> None:
    """Fail a task; reports whether escalation is required."""
    outcome = _bundle(ctx).orchestrator.fail_task(task_id, reason, expected_revision=expected_revision)
    _echo_json(_dump(outcome))


@task.command("cancel")
@click.argument("task_id")
@click.option("--reason", default="")
@click.option("--expected-revision", type=int, default=None)
@click.pass_context
@_domain_errors
def task_cancel(ctx: click.Context, task_id: str, reason: str, expected_revision: Optional[int]) -> None:
    t = _bundle(ctx).orchestrator.cancel_task(task_id, reason, expected_revision=expected_revision)
    _echo_json(_dump(t))


@task.command("retry")
@click.argument("task_id")
@click.option("--expected-revision", type=int, default=None)
@click.pass_context
@_domain_errors
def task_retry(ctx: click.Context, task_id: str, expected_revision: Optional[int]) -> None:
    """Return a Failed task to Pending (iteration count preserved)."""
    t = _bundle(ctx).orchestrator.retry_task(task_id, expected_revision=expected_revision)
    _echo_json(_dump(t))


@task.command("show")
@click.argument("task_id")
@click.pass_context
@_domain_errors
def task_show(ctx: click.Context, task_id: str) -> None:
    _echo_json(_dump(_bundle(ctx).orchestrator.get_task(task_id)))


@task.command("list")
@click.option("--status", type=click.Choice([s.value for s in TaskStatus]), default=None)
@click.option("--worker-class", type=click.Choice(_WORKER_CLASSES), default=None)
@click.option("--convoy", "convoy_id", default=None)
@click.option("--milestone", default=None)
@click.option("--tag", multiple=True)
@click.option("--active-only", is_flag=True, default=False, help="Hide terminal tasks.")
@click.option("--offset", type=int, default=0)
@click.option("--limit", type=int, default=None)
@click.pass_context
@_domain_errors
def task_list(
    ctx: click.Context,
    status: Optional[str],
    worker_class: Optional[str],
    convoy_id: Optional[str],
    milestone: Optional[str],
    tag: tuple[str, ...],
    active_only: bool,
    offset: int,
    limit: Optional[int],
) -> None:
    task_filter = TaskFilter(
        status=status,
        worker_class=worker_class,
        convoy_id=convoy_id,
        milestone=milestone,
        tags=list(tag),
        include_completed=not active_only,
        offset=offset,
        limit=limit,
    )
    tasks = _bundle(ctx).orchestrator.list_tasks(task_filter)
    _echo_json({"tasks": [_dump(t) for t in tasks], "count": len(tasks)})


@task.command("next")
@click.option("--worker-class", type=click.Choice(_WORKER_CLASSES), default=None)
@click.pass_context
@_domain_errors
def task_next(ctx: click.Context, worker_class: Optional[str]) -> None:
    """Show the highest-priority task that is ready to assign."""
    t = _bundle(ctx).orchestrator.get_next_task(worker_class)
    _echo_json({"task": _dump(t) if t else None})


# ---------------------------------------------------------------------------
# Convoys
# ---------------------------------------------------------------------------

@cli.group()
def convoy() -> None:
    """Group tasks into dependency-ordered convoys."""


@convoy.command("create")
@click.option("--name", required=True)
@click.option("--description", default="")
@click.option("--milestone", default=None)
@click.option("--task", "task_ids", multiple=True, help="Member task id (repeatable).")
@click.option("--depends-on", multiple=True, help="Prerequisite convoy id (repeatable).")
@click.option("--priority", type=int, default=None, help="Higher runs first.")
@click.option("--worker-class", type=click.Choice(_WORKER_CLASSES), default=None)
@click.option("--deliverable", multiple=True)
@click.option("--criterion", multiple=True)
@click.pass_context
@_domain_errors
def convoy_create(
    ctx: click.Context,
    name: str,
    description: str,
    milestone: Optional[str],
    task_ids: tuple[str, ...],
    depends_on: tuple[str, ...],
    priority: Optional[int],
    worker_class: Optional[str],
    deliverable: tuple[str, ...],
    criterion: tuple[str, ...],
) -> None:
    bundle = _bundle(ctx)
    config = ConvoyConfig(
        name=name,
        description=description,
        milestone=milestone,
        task_ids=list(task_ids),
        dependencies=list(depends_on),
        priority=priority if priority is not None else bundle.config.orchestration.default_priority,
        assigned_worker_class=worker_class,
        deliverables=list(deliverable),
        completion_criteria=list(criterion),
    )
    _echo_json(_dump(bundle.orchestrator.create_convoy(config)))


@convoy.command("add-task")
@click.argument("convoy_id")
@click.argument("task_id")
@click.pass_context
@_domain_errors
def convoy_add_task(ctx: click.Context, convoy_id: str, task_id: str) -> None:
    _echo_json(_dump(_bundle(ctx).orchestrator.add_task_to_convoy(convoy_id, task_id)))


@convoy.command("remove-task")
@click.argument("convoy_id")
@click.argument("task_id")
@click.pass_context
@_domain_errors
def convoy_remove_task(ctx: click.Context, convoy_id: str, task_id: str) -> None:
    _echo_json(_dump(_bundle(ctx).orchestrator.remove_task_from_convoy(convoy_id, task_id)))


@convoy.command("add-dependency")
@click.argument("convoy_id")
@click.argument("prerequisite_id")
@click.pass_context
@_domain_errors
def convoy_add_dependency(ctx: click.Context, convoy_id: str, prerequisite_id: str) -> None:
    _echo_json(_dump(_bundle(ctx).orchestrator.add_convoy_dependency(convoy_id, prerequisite_id)))


@convoy.command("remove-dependency")
@click.argument("convoy_id")
@click.argument("prerequisite_id")
@click.pass_context
@_domain_errors
def convoy_remove_dependency(ctx: click.Context, convoy_id: str, prerequisite_id: str) -> None:
    _echo_json(_dump(_bundle(ctx).orchestrator.remove_convoy_dependency(convoy_id, prerequisite_id)))


@convoy.command("complete")
@click.argument("convoy_id")
@click.pass_context
@_domain_errors
def convoy_complete(ctx: click.Context, convoy_id: str) -> None:
    """Complete a convoy whose member tasks are all completed."""
    _echo_json(_dump(_bundle(ctx).orchestrator.complete_convoy(convoy_id)))


@convoy.command("fail")
@click.argument("convoy_id")
@click.option("--reason", required=True)
@click.pass_context
@_domain_errors
def convoy_fail(ctx: click.Context, convoy_id: str, reason: str) -> None:
    _echo_json(_dump(_bundle(ctx).orchestrator.fail_convoy(convoy_id, reason)))


@convoy.command("cancel")
@click.argument("convoy_id")
@click.option("--reason", default="")
@click.pass_context
@_domain_errors
def convoy_cancel(ctx: click.Context, convoy_id: str, reason: str) -> None:
    _echo_json(_dump(_bundle(ctx).orchestrator.cancel_convoy(convoy_id, reason)))


@convoy.command("retry")
@click.argument("convoy_id")
@click.pass_context
@_domain_errors
def convoy_retry(ctx: click.Context, convoy_id: str) -> None:
    _echo_json(_dump(_bundle(ctx).orchestrator.retry_convoy(convoy_id)))


@convoy.command("show")
@click.argument("convoy_id")
@click.option("--tasks", "with_tasks", is_flag=True, default=False, help="Include member tasks by status.")
@click.pass_context
@_domain_errors
def convoy_show(ctx: click.Context, convoy_id: str, with_tasks: bool) -> None:
    orchestrator = _bundle(ctx).orchestrator
    payload = _dump(orchestrator.get_convoy(convoy_id))
    if with_tasks:
        summary = orchestrator.convoy_task_summary(convoy_id)
        payload["tasks_by_status"] = {
            status.value: [t.id for t in tasks] for status, tasks in summary.tasks_by_status.items()
        }
    _echo_json(payload)


@convoy.command("list")
@click.option("--status", type=click.Choice([s.value for s in ConvoyStatus]), default=None)
@click.option("--milestone", default=None)
@click.option("--active-only", is_flag=True, default=False)
@click.pass_context
@_domain_errors
def convoy_list(ctx: click.Context, status: Optional[str], milestone: Optional[str], active_only: bool) -> None:
    convoy_filter = ConvoyFilter(status=status, milestone=milestone, include_completed=not active_only)
    convoys = _bundle(ctx).orchestrator.list_convoys(convoy_filter)
    _echo_json({"convoys": [_dump(c) for c in convoys], "count": len(convoys)})


@convoy.command("next-ready")
@click.option("--milestone", default=None)
@click.pass_context
@_domain_errors
def convoy_next_ready(ctx: click.Context, milestone: Optional[str]) -> None:
    """Show the next convoy whose prerequisites are all completed."""
    c = _bundle(ctx).orchestrator.next_ready_convoy(milestone)
    _echo_json({"convoy": _dump(c) if c else None})


# ---------------------------------------------------------------------------
# Safety
# ---------------------------------------------------------------------------

@cli.group()
def safety() -> None:
    """Iteration, budget, admission and rollback controls."""


@safety.command("check-limits")
@click.option("--task-id", default=None)
@click.option("--cost-estimate", default="0", show_default=True)
@click.pass_context
@_domain_errors
def safety_check_limits(ctx: click.Context, task_id: Optional[str], cost_estimate: str) -> None:
    report = _bundle(ctx).governor.check_limits(task_id=task_id, cost_estimate=cost_estimate)
    _echo_json(_dump(report))


@safety.command("iterations")
@click.argument("task_id")
@click.pass_context
@_domain_errors
def safety_iterations(ctx: click.Context, task_id: str) -> None:
    _echo_json(_dump(_bundle(ctx).governor.get_iteration_info(task_id)))


@safety.command("reset-iterations")
@click.argument("task_id")
@click.pass_context
@_domain_errors
def safety_reset_iterations(ctx: click.Context, task_id: str) -> None:
    """Zero a task's iteration counter (normally after an approval)."""
    _echo_json(_dump(_bundle(ctx).governor.reset_iterations(task_id)))


@safety.command("record-cost")
@click.argument("amount")
@click.option("--description", required=True)
@click.option("--task-id", default=None)
@click.option("--agent-id", default=None)
@click.pass_context
@_domain_errors
def safety_record_cost(
    ctx: click.Context,
    amount: str,
    description: str,
    task_id: Optional[str],
    agent_id: Optional[str],
) -> None:
    governor = _bundle(ctx).governor
    entry = governor.record_cost(amount, description, task_id=task_id, agent_id=agent_id)
    budget = governor.get_budget_status()
    _echo_json({
        "entry": _dump(entry),
        "spent_this_hour": str(budget.spent_this_hour),
        "remaining_budget": str(budget.remaining_budget),
        "is_paused": budget.is_paused,
    })


@safety.command("budget")
@click.pass_context
@_domain_errors
def safety_budget(ctx: click.Context) -> None:
    _echo_json(_dump(_bundle(ctx).governor.get_budget_status()))


@safety.command("resume-budget")
@click.option("--note", default=None)
@click.pass_context
@_domain_errors
def safety_resume_budget(ctx: click.Context, note: Optional[str]) -> None:
    """Clear a budget pause."""
    _echo_json(_dump(_bundle(ctx).governor.resume_budget(note)))


@safety.command("register-agent")
@click.argument("agent_id")
@click.option("--type", "agent_type", required=True)
@click.option("--task-id", default=None)
@click.pass_context
@_domain_errors
def safety_register_agent(ctx: click.Context, agent_id: str, agent_type: str, task_id: Optional[str]) -> None:
    _echo_json(_dump(_bundle(ctx).governor.register_agent(agent_id, agent_type, task_id=task_id)))


@safety.command("unregister-agent")
@click.argument("agent_id")
@click.pass_context
@_domain_errors
def safety_unregister_agent(ctx: click.Context, agent_id: str) -> None:
    removed = _bundle(ctx).governor.unregister_agent(agent_id)
    _echo_json({"agent_id": agent_id, "removed": removed})


@safety.command("agents")
@click.pass_context
@_domain_errors
def safety_agents(ctx: click.Context) -> None:
    governor = _bundle(ctx).governor
    agents = governor.list_active_agents()
    _echo_json({
        "agents": [_dump(a) for a in agents],
        "count": len(agents),
        "max_parallel_agents": governor.admission.max_parallel_agents,
        "can_spawn_agent": governor.check_parallel_agents(),
    })


@safety.command("rollback")
@click.option("--reason", required=True)
@click.option("--target", default=None, help="Explicit ref to roll back to.")
@click.pass_context
@_domain_errors
def safety_rollback(ctx: click.Context, reason: str, target: Optional[str]) -> None:
    """Revert the work product to the last known-good checkpoint."""
    result = _bundle(ctx).governor.trigger_rollback(reason, target_ref=target)
    _echo_json(_dump(result))
    if not result.success:
        raise click.exceptions.Exit(1)


@safety.command("checkpoint")
@click.option("--ref", default="HEAD", show_default=True)
@click.option("--note", default=None)
@click.pass_context
@_domain_errors
def safety_checkpoint(ctx: click.Context, ref: str, note: Optional[str]) -> None:
    """Mark a commit as the known-good rollback target."""
    _echo_json(_dump(_bundle(ctx).governor.mark_checkpoint(ref, note=note)))


@safety.command("rollbacks")
@click.option("--limit", type=int, default=None)
@click.pass_context
@_domain_errors
def safety_rollbacks(ctx: click.Context, limit: Optional[int]) -> None:
    results = _bundle(ctx).governor.list_rollbacks(limit)
    _echo_json({"rollbacks": [_dump(r) for r in results], "count": len(results)})


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------

@cli.group()
def approval() -> None:
    """Human approval requests."""


@approval.command("request")
@click.option("--reason", required=True)
@click.option("--context", "context_pairs", multiple=True, help="KEY=VALUE (repeatable).")
@click.option("--task-id", default=None)
@click.option("--agent-id", default=None)
@click.option("--priority", type=click.IntRange(0, 3), default=1, show_default=True)
@click.option("--category", type=click.Choice([c.value for c in ApprovalCategory]), default=None)
@click.pass_context
@_domain_errors
def approval_request(
    ctx: click.Context,
    reason: str,
    context_pairs: tuple[str, ...],
    task_id: Optional[str],
    agent_id: Optional[str],
    priority: int,
    category: Optional[str],
) -> None:
    request = _bundle(ctx).governor.request_approval(
        reason,
        _parse_context(context_pairs),
        task_id=task_id,
        agent_id=agent_id,
        priority=priority,
        category=ApprovalCategory(category) if category else None,
    )
    _echo_json(_dump(request))


@approval.command("request-iteration")
@click.argument("task_id")
@click.pass_context
@_domain_errors
def approval_request_iteration(ctx: click.Context, task_id: str) -> None:
    """Ask for more attempts on an escalated task."""
    _echo_json(_dump(_bundle(ctx).governor.request_iteration_approval(task_id)))


@approval.command("show")
@click.argument("request_id")
@click.pass_context
@_domain_errors
def approval_show(ctx: click.Context, request_id: str) -> None:
    _echo_json(_dump(_bundle(ctx).governor.get_approval_status(request_id)))


@approval.command("list")
@click.pass_context
@_domain_errors
def approval_list(ctx: click.Context) -> None:
    """List pending requests, most urgent first."""
    pending = _bundle(ctx).governor.list_pending_approvals()
    _echo_json({"approvals": [_dump(r) for r in pending], "count": len(pending)})


@approval.command("resolve")
@click.argument("request_id")
@click.option("--approve/--reject", "approved", required=True)
@click.option("--notes", default=None)
@click.pass_context
@_domain_errors
def approval_resolve(ctx: click.Context, request_id: str, approved: bool, notes: Optional[str]) -> None:
    _echo_json(_dump(_bundle(ctx).governor.resolve_approval(request_id, approved, notes)))


def main() -> None:
    """Entry point used by `overseer` console script."""
    from dotenv import load_dotenv
    load_dotenv(Path(__file__).parent.parent / ".env", override=True)
    cli()


if __name__ == "__main__":
    main()
