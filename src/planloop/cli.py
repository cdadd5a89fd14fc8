"""CLI commands for selecting and running plans."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, NoReturn, Optional

import typer
import yaml

from .cancellation import CancellationToken, cancel_on_signals
from .config import DEFAULT_CONFIG_NAME, PlanLoopConfig, copy_config_template
from .errors import ExecutorFailureError, PlanLoopError
from .memory.schema import Plan
from .memory.store import PlanStore
from .models import build_executor
from .planning.actionable import get_all_incomplete_tasks
from .planning.executor import PlanExecutionSummary, PlanExecutor, build_strategy
from .planning.graph import find_next_plan, find_next_ready_dependency, list_ready_plans
from .planning.summary import SummaryCollector
from .tools.vcs import GitError, GitRepository
from .tools.workspace_lock import WorkspaceLock

APP_HELP = "Run dependency-linked plan files through an executor."
LOGGER = logging.getLogger(__name__)

app = typer.Typer(help=APP_HELP)


@dataclass(slots=True)
class Settings:
    """Loaded configuration plus the directory it is relative to."""

    config_path: Path
    config: PlanLoopConfig
    base_dir: Path

    @property
    def store(self) -> PlanStore:
        return PlanStore(self.config.tasks_dir(self.base_dir))


def _write_config(config_path: Path, config_data: Dict[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(config_data, handle, sort_keys=False)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error

    if not isinstance(data, dict):
        typer.echo("Configuration must be a mapping at the top level.")
        raise typer.Exit(code=1)

    return data


def _load_settings(config: str) -> Settings:
    config_path = Path(config)
    data = load_config(config_path)
    try:
        validated = PlanLoopConfig.from_mapping(data)
    except PlanLoopError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    return Settings(
        config_path=config_path,
        config=validated,
        base_dir=config_path.resolve().parent,
    )


def _config_option() -> Any:
    return typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the planloop configuration file.",
    )


def _fail(error: PlanLoopError) -> NoReturn:
    """Echo a fatal error (with structured executor detail) and exit non-zero."""
    typer.echo(f"Error: {error}", err=True)
    if isinstance(error, ExecutorFailureError) and error.details is not None:
        details = error.details
        if details.source_agent:
            typer.echo(f"FAILED: {details.source_agent}", err=True)
        if details.requirements:
            typer.echo(f"Requirements:\n{details.requirements}", err=True)
        if details.problems:
            typer.echo(f"Problems:\n{details.problems}", err=True)
        if details.solutions:
            typer.echo(f"Possible solutions:\n{details.solutions}", err=True)
    raise typer.Exit(code=1)


def _render_plan_execution(summary: PlanExecutionSummary) -> None:
    """Render a concise summary for a plan execution run."""
    plan = summary.plan
    typer.echo(f"Plan {plan.id} [{plan.status.value}] {plan.display_title} ({summary.mode} mode)")
    if not summary.iterations:
        typer.echo("No work was executed.")
    for outcome in summary.iterations:
        if outcome.dry_run:
            typer.echo(f"- {outcome.title or 'plan'} -> DRY RUN")
            continue
        typer.echo(f"- {outcome.title} -> {outcome.completed_units} completed, {outcome.remaining} remaining")
        if outcome.commit_sha:
            typer.echo(f"    commit: {outcome.commit_sha[:7]} {outcome.commit_message or ''}".rstrip())
    if summary.completed:
        typer.echo("Plan complete.")
    for parent_id in summary.parents_completed:
        typer.echo(f"Parent plan {parent_id} marked done.")


def _render_plan_line(plan: Plan) -> str:
    priority = plan.priority.value if plan.priority else "-"
    return f"{plan.id}\t[{plan.status.value}]\t{priority}\t{plan.display_title}"


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )


@app.command()
def init(
    config: str = _config_option(),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file and create the tasks directory."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists: {config_path}")
        raise typer.Exit(code=1)

    config_data = copy_config_template()
    _write_config(config_path, config_data)
    tasks_dir = config_path.resolve().parent / config_data["paths"]["tasks"]
    tasks_dir.mkdir(parents=True, exist_ok=True)
    typer.echo(f"Wrote {config_path}")
    typer.echo(f"Plans directory: {tasks_dir}")


@app.command()
def run(
    plan: Optional[str] = typer.Argument(None, help="Plan file path or numeric plan id."),
    next_plan: bool = typer.Option(False, "--next", help="Run the highest-priority ready pending plan."),
    current: bool = typer.Option(
        False,
        "--current",
        help="Run the current in-progress plan, falling back to the next ready one.",
    ),
    next_ready: Optional[int] = typer.Option(
        None,
        "--next-ready",
        help="Run the next ready dependency of this parent plan id.",
    ),
    serial_tasks: bool = typer.Option(False, "--serial-tasks", help="Execute one step or task per invocation."),
    executor_name: Optional[str] = typer.Option(None, "--executor", "-x", help="Executor to use."),
    steps: Optional[int] = typer.Option(None, "--steps", min=1, help="Maximum number of iterations."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print the next prompt without executing."),
    simple: bool = typer.Option(False, "--simple", help="Ask the executor for simple mode."),
    no_commit: bool = typer.Option(False, "--no-commit", help="Do not commit after progress."),
    summary_file: Optional[Path] = typer.Option(None, "--summary-file", help="Write a JSON run summary here."),
    config: str = _config_option(),
) -> None:
    """Run a plan until it is done or a fatal error stops it."""
    selectors = [plan is not None, next_plan, current, next_ready is not None]
    if sum(selectors) != 1:
        raise typer.BadParameter("Provide exactly one of PLAN, --next, --current or --next-ready.")

    settings = _load_settings(config)
    store = settings.store

    try:
        plan_file = _select_plan_file(store, plan, next_plan=next_plan, current=current, next_ready=next_ready)
    except PlanLoopError as error:
        _fail(error)
    if plan_file is None:
        raise typer.Exit(code=0)

    commit = settings.config.execution.commit and not no_commit
    repo: GitRepository | None = None
    if commit and not dry_run:
        try:
            repo = GitRepository.discover(settings.base_dir)
        except GitError as error:
            LOGGER.warning("Commits disabled: %s", error)

    mode = "serial" if serial_tasks else settings.config.execution.mode
    token = CancellationToken()
    collector: SummaryCollector | None = None
    try:
        executor = build_executor(
            executor_name or settings.config.execution.executor,
            settings.config.executors,
            cwd=settings.base_dir,
        )
        runner = PlanExecutor(
            store,
            executor,
            config=settings.config,
            workspace=settings.base_dir,
            strategy=build_strategy(mode),
            repo=repo,
            lock=WorkspaceLock.from_config(settings.config.lock),
            cancellation=token,
            max_steps=steps,
            dry_run=dry_run,
            simple=simple,
            commit=commit,
        )
        target = store.read_plan(plan_file)
        collector = SummaryCollector(plan_id=target.numeric_id, plan_title=target.display_title, mode=mode)
        with cancel_on_signals(token):
            summary = runner.execute(plan_file, collector=collector)
    except PlanLoopError as error:
        if summary_file is not None and collector is not None:
            collector.write_json(summary_file)
        _fail(error)

    _render_plan_execution(summary)
    if summary_file is not None and summary.collector is not None:
        summary.collector.write_json(summary_file)
        typer.echo(f"Summary written to {summary_file}")


def _select_plan_file(
    store: PlanStore,
    plan_arg: Optional[str],
    *,
    next_plan: bool,
    current: bool,
    next_ready: Optional[int],
) -> Optional[Path]:
    if plan_arg is not None:
        return store.resolve_plan_file(plan_arg)

    plans = store.list_plans()
    if next_ready is not None:
        result = find_next_ready_dependency(next_ready, plans)
        typer.echo(result.message)
        return result.plan.filename if result.plan is not None else None

    selected = find_next_plan(plans, include_pending=True, include_in_progress=current)
    if selected is None:
        typer.echo("No ready plans found.")
        return None
    typer.echo(f"Selected plan {selected.id}: {selected.display_title}")
    return selected.filename


@app.command("next-ready")
def next_ready_command(
    parent: int = typer.Argument(..., help="Parent plan id."),
    config: str = _config_option(),
) -> None:
    """Show which dependency of PARENT should be worked on next."""
    settings = _load_settings(config)
    result = find_next_ready_dependency(parent, settings.store.list_plans())
    typer.echo(result.message)
    if result.plan is not None:
        typer.echo(f"File: {result.plan.filename}")


@app.command()
def ready(
    include_in_progress: bool = typer.Option(
        False,
        "--include-in-progress",
        help="Also list plans that are already in progress.",
    ),
    config: str = _config_option(),
) -> None:
    """List plans whose dependencies are all done, best first."""
    settings = _load_settings(config)
    plans = list_ready_plans(settings.store.list_plans(), include_in_progress=include_in_progress)
    if not plans:
        typer.echo("No ready plans.")
        return
    for entry in plans:
        typer.echo(_render_plan_line(entry))


@app.command()
def status(
    plan: str = typer.Argument(..., help="Plan file path or numeric plan id."),
    config: str = _config_option(),
) -> None:
    """Report a plan's status and task progress."""
    settings = _load_settings(config)
    store = settings.store
    try:
        record = store.read_plan(store.resolve_plan_file(plan))
    except PlanLoopError as error:
        _fail(error)

    incomplete = {entry.task_index for entry in get_all_incomplete_tasks(record)}
    done_count = len(record.tasks) - len(incomplete)
    typer.echo(_render_plan_line(record))
    typer.echo(f"Tasks: {done_count}/{len(record.tasks)} done")
    for index, task in enumerate(record.tasks):
        marker = " " if index in incomplete else "x"
        progress = ""
        if task.steps:
            finished = sum(1 for step in task.steps if step.done)
            progress = f" ({finished}/{len(task.steps)} steps)"
        typer.echo(f"  [{marker}] {index + 1}. {task.title}{progress}")


@app.command()
def unlock(
    path: Optional[Path] = typer.Argument(None, help="Workspace directory (defaults to the config directory)."),
    force: bool = typer.Option(False, "--force", help="Remove the lock even if its holder is alive."),
    config: str = _config_option(),
) -> None:
    """Remove a stale workspace lock."""
    settings = _load_settings(config)
    workspace = (path or settings.base_dir).resolve()
    lock = WorkspaceLock.from_config(settings.config.lock)
    record = lock.read_record(workspace)
    if record is None and not lock.lock_path(workspace).exists():
        typer.echo(f"No lock found for {workspace}")
        return
    if record is None or lock.is_stale(record):
        lock.clear_stale_lock(workspace)
        typer.echo(f"Removed stale lock for {workspace}")
        return
    if not force:
        typer.echo(
            f"Workspace {workspace} is locked by live process {record.pid} ({record.command}); "
            "use --force to remove it."
        )
        raise typer.Exit(code=1)
    lock.release(workspace, force=True)
    typer.echo(f"Removed lock held by process {record.pid}")


if __name__ == "__main__":
    app()
