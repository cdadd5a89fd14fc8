"""Plan executor: drives a plan's tasks to completion through an executor."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from ..cancellation import CancellationToken
from ..config import PlanLoopConfig, PostApplyCommand
from ..errors import (
    ExecutorFailureError,
    NoProgressError,
    PlanExecutionError,
    PlanLoopError,
    PostCompletionCommandError,
)
from ..events import (
    EXECUTION_FAILED,
    ITERATION_COMPLETED,
    PLAN_DONE,
    PLAN_IN_PROGRESS,
    UNIT_COMPLETED,
    EventSink,
    PlanEvent,
    log_event,
)
from ..memory.schema import Plan, PlanStatus
from ..memory.store import PlanStore, require_numeric_id
from ..models.executor import ExecutionMode, ExecutionOptions, Executor, ExecutorResult
from ..prompts import build_batch_prompt, build_unit_prompt
from ..tools.commands import run_post_apply_commands
from ..tools.vcs import GitError, GitRepository
from ..tools.workspace_lock import WorkspaceLock
from ..tools.workspace_tracker import update_workspace_description
from .actionable import find_next_actionable_item, get_all_incomplete_tasks
from .mark_done import mark_step_done, mark_task_done
from .parents import ParentPropagator
from .summary import SummaryCollector

LOGGER = logging.getLogger(__name__)

BATCH_COMMIT_MESSAGE = "Finish batch tasks iteration"


@dataclass(slots=True)
class IterationOutcome:
    """Result of one scheduler iteration."""

    title: str
    executed: bool
    completed_units: int = 0
    remaining: int = 0
    plan_complete: bool = False
    dry_run: bool = False
    commit_message: Optional[str] = None
    commit_sha: Optional[str] = None
    result: Optional[ExecutorResult] = None


@dataclass(slots=True)
class PlanExecutionSummary:
    """Aggregated summary for executing a plan loop."""

    plan: Plan
    mode: str
    iterations: list[IterationOutcome] = field(default_factory=list)
    completed: bool = False
    parents_completed: list[int] = field(default_factory=list)
    collector: Optional[SummaryCollector] = None


@dataclass(slots=True)
class ExecutionContext:
    """Everything a strategy needs for one iteration."""

    store: PlanStore
    plan_file: Path
    plan_id: int
    workspace: Path
    executor: Executor
    execution_mode: ExecutionMode
    iteration: int
    dry_run: bool
    post_apply_commands: Sequence[PostApplyCommand]
    collector: SummaryCollector
    emit: EventSink

    def read_plan(self) -> Plan:
        return self.store.read_plan(self.plan_file)

    def invoke(self, prompt: str, *, plan: Plan, title: str, batch_mode: bool) -> ExecutorResult:
        """Run the executor once; a reported failure raises :class:`ExecutorFailureError`."""

        options = ExecutionOptions(
            plan_id=self.plan_id,
            plan_title=plan.display_title,
            plan_file_path=self.plan_file,
            execution_mode=self.execution_mode,
            batch_mode=batch_mode,
        )
        self.collector.start_unit()
        try:
            result = ExecutorResult.coerce(self.executor.execute(prompt, options))
        except Exception as error:
            self.collector.add_unit_result(
                title=title,
                executor=self.executor.name,
                success=False,
                iteration=self.iteration,
                error_message=str(error),
            )
            raise ExecutorFailureError(f"{title} failed: {error}") from error

        self.collector.add_unit_result(
            title=title,
            executor=self.executor.name,
            success=result.success,
            iteration=self.iteration,
            error_message=None if result.success else "executor reported failure",
            failure_details=result.failure_details,
        )
        if not result.success:
            details = result.failure_details
            if details is not None:
                LOGGER.error("FAILED: %s", details.source_agent or self.executor.name)
                if details.requirements.strip():
                    LOGGER.error("Requirements:\n%s", details.requirements.strip())
                if details.problems.strip():
                    LOGGER.error("Problems:\n%s", details.problems.strip())
                if details.solutions.strip():
                    LOGGER.error("Possible solutions:\n%s", details.solutions.strip())
            raise ExecutorFailureError(f"{title} failed: executor reported failure", details=details)
        return result

    def run_post_apply(self) -> None:
        if self.post_apply_commands:
            run_post_apply_commands(self.post_apply_commands, self.workspace)


class ExecutionStrategy(ABC):
    """One way of turning a plan into executor invocations."""

    name: str = "strategy"
    batch_mode: bool = False

    @abstractmethod
    def run_iteration(self, context: ExecutionContext) -> IterationOutcome:
        """Re-read the plan, run at most one executor invocation and persist progress."""

    @staticmethod
    def _complete(context: ExecutionContext, plan: Plan) -> IterationOutcome:
        if plan.status != PlanStatus.DONE and not context.dry_run:
            context.store.set_plan_status(context.plan_file, PlanStatus.DONE)
        return IterationOutcome(title="", executed=False, plan_complete=True)


class SerialStrategy(ExecutionStrategy):
    """One step (or step-less task) per executor invocation, in document order."""

    name = "serial"

    def run_iteration(self, context: ExecutionContext) -> IterationOutcome:
        plan = context.read_plan()
        item = find_next_actionable_item(plan)
        if item is None:
            return self._complete(context, plan)

        prompt = build_unit_prompt(plan, context.plan_file, item)
        if context.dry_run:
            LOGGER.info("Dry run: prompt for %s\n%s", item.label, prompt)
            return IterationOutcome(title=item.label, executed=False, dry_run=True)

        LOGGER.info("Executing %s", item.label)
        result = context.invoke(prompt, plan=plan, title=item.label, batch_mode=False)
        context.run_post_apply()

        if item.kind == "step" and item.step_index is not None:
            marked = mark_step_done(context.store, context.plan_file, item.task_index, item.step_index)
        else:
            marked = mark_task_done(context.store, context.plan_file, item.task_index)
        remaining = len(get_all_incomplete_tasks(marked.plan))
        context.emit(
            PlanEvent(
                kind=UNIT_COMPLETED,
                plan_id=context.plan_id,
                message=marked.message,
                data={"task_index": item.task_index, "step_index": item.step_index},
            )
        )
        return IterationOutcome(
            title=item.label,
            executed=True,
            completed_units=1,
            remaining=remaining,
            plan_complete=marked.plan_complete,
            commit_message=marked.message,
            result=result,
        )


class BatchStrategy(ExecutionStrategy):
    """Hand every incomplete task to one executor invocation.

    The executor marks tasks done in the plan file itself; progress is measured
    by re-reading the file afterwards.
    """

    name = "batch"
    batch_mode = True

    def run_iteration(self, context: ExecutionContext) -> IterationOutcome:
        plan = context.read_plan()
        incomplete = get_all_incomplete_tasks(plan)
        if not incomplete:
            return self._complete(context, plan)

        title = f"Batch Iteration {context.iteration}"
        prompt = build_batch_prompt(plan, context.plan_file, incomplete)
        if context.dry_run:
            LOGGER.info("Dry run: batch prompt\n%s", prompt)
            return IterationOutcome(title=title, executed=False, remaining=len(incomplete), dry_run=True)

        LOGGER.info("Batch mode: processing %d incomplete task(s)", len(incomplete))
        result = context.invoke(prompt, plan=plan, title=title, batch_mode=True)
        context.run_post_apply()

        updated = context.read_plan()
        remaining = get_all_incomplete_tasks(updated)
        completed = len(incomplete) - len(remaining)
        LOGGER.info("Batch iteration complete. Remaining incomplete tasks: %d", len(remaining))
        context.collector.set_batch_iterations(context.iteration)

        if not remaining:
            context.store.set_plan_status(context.plan_file, PlanStatus.DONE)
            outcome = IterationOutcome(
                title=title,
                executed=True,
                completed_units=completed,
                remaining=0,
                plan_complete=True,
                commit_message=f"Plan complete: {updated.display_title}",
                result=result,
            )
        elif completed <= 0:
            raise NoProgressError(
                f"{title} completed no tasks ({len(remaining)} still incomplete); stopping",
                remaining=len(remaining),
            )
        else:
            outcome = IterationOutcome(
                title=title,
                executed=True,
                completed_units=completed,
                remaining=len(remaining),
                commit_message=BATCH_COMMIT_MESSAGE,
                result=result,
            )

        context.emit(
            PlanEvent(
                kind=ITERATION_COMPLETED,
                plan_id=context.plan_id,
                message=f"{title}: {completed} task(s) completed, {len(remaining)} remaining",
                data={"completed": completed, "remaining": len(remaining)},
            )
        )
        return outcome


def build_strategy(mode: str) -> ExecutionStrategy:
    if mode == SerialStrategy.name:
        return SerialStrategy()
    if mode == BatchStrategy.name:
        return BatchStrategy()
    raise PlanLoopError(f"Unknown execution mode: {mode}")


class PlanExecutor:
    """Run one plan to completion under a strategy.

    The surrounding plumbing is shared by both strategies: the workspace lock,
    the ``pending -> in_progress`` transition, parent propagation, commits and
    cancellation checks between iterations.
    """

    def __init__(
        self,
        store: PlanStore,
        executor: Executor,
        *,
        config: PlanLoopConfig | None = None,
        workspace: Path | None = None,
        strategy: ExecutionStrategy | None = None,
        repo: GitRepository | None = None,
        lock: WorkspaceLock | None = None,
        propagator: ParentPropagator | None = None,
        events: EventSink | None = None,
        cancellation: CancellationToken | None = None,
        max_steps: int | None = None,
        dry_run: bool = False,
        simple: bool = False,
        commit: bool | None = None,
    ) -> None:
        self._store = store
        self._executor = executor
        self._config = config or PlanLoopConfig()
        self._workspace = Path(workspace or Path.cwd()).resolve()
        self._strategy = strategy or build_strategy(self._config.execution.mode)
        self._repo = repo
        self._lock = lock
        self._emit = events or log_event
        self._propagator = propagator or ParentPropagator(store, events=self._emit)
        self._cancellation = cancellation or CancellationToken()
        self._max_steps = max_steps if max_steps is not None else self._config.execution.max_steps
        self._dry_run = dry_run
        self._simple = simple
        self._commit = self._config.execution.commit if commit is None else commit

    @property
    def strategy(self) -> ExecutionStrategy:
        return self._strategy

    # ------------------------------------------------------------------ public
    def execute(
        self,
        plan_file: Path | str,
        *,
        collector: SummaryCollector | None = None,
    ) -> PlanExecutionSummary:
        """Run ``plan_file`` until it is done, a fatal error occurs or a limit is hit.

        Pass ``collector`` to keep the per-unit results when the run fails.
        """

        plan_path = Path(plan_file).resolve()
        plan = self._store.read_plan(plan_path)
        plan_id = require_numeric_id(plan.id)
        if collector is None:
            collector = SummaryCollector(plan_id=plan_id, plan_title=plan.display_title, mode=self._strategy.name)
        summary = PlanExecutionSummary(plan=plan, mode=self._strategy.name, collector=collector)

        with ExitStack() as stack:
            if self._lock is not None and not self._dry_run:
                stack.enter_context(self._lock.held(self._workspace, f"planloop run {plan_path.name}"))
            try:
                self._run(plan_path, plan_id, summary, collector)
            except PlanLoopError as error:
                collector.add_error(error)
                collector.finish(completed=False)
                self._emit(
                    PlanEvent(
                        kind=EXECUTION_FAILED,
                        plan_id=plan_id,
                        message=str(error),
                        data={"error": type(error).__name__},
                    )
                )
                raise

        summary.plan = self._store.read_plan(plan_path)
        collector.finish(completed=summary.completed)
        return summary

    # ----------------------------------------------------------------- helpers
    def _run(
        self,
        plan_path: Path,
        plan_id: int,
        summary: PlanExecutionSummary,
        collector: SummaryCollector,
    ) -> None:
        plan = self._store.read_plan(plan_path)
        tracking_file = self._config.tracking_file(self._workspace)
        if not self._dry_run:
            update_workspace_description(tracking_file, self._workspace, plan)
            self._start_plan(plan_path, plan_id, plan)

        execution_mode: ExecutionMode = "simple" if (self._simple or plan.simple) else "normal"
        iteration = 0
        while True:
            self._cancellation.raise_if_cancelled()
            if self._max_steps is not None and iteration >= self._max_steps:
                LOGGER.info("Reached the maximum of %d iteration(s)", self._max_steps)
                break
            iteration += 1
            context = ExecutionContext(
                store=self._store,
                plan_file=plan_path,
                plan_id=plan_id,
                workspace=self._workspace,
                executor=self._executor,
                execution_mode=execution_mode,
                iteration=iteration,
                dry_run=self._dry_run,
                post_apply_commands=self._config.post_apply_commands,
                collector=collector,
                emit=self._emit,
            )
            outcome = self._strategy.run_iteration(context)
            if outcome.executed or outcome.dry_run:
                summary.iterations.append(outcome)
            if outcome.dry_run:
                break
            self._track_changes(collector)

            if outcome.plan_complete:
                summary.completed = True
                if not self._dry_run:
                    self._finish_plan(plan_path, plan_id, summary, outcome)
                break
            outcome.commit_sha = self._commit_progress(outcome.commit_message, final=False)

    def _start_plan(self, plan_path: Path, plan_id: int, plan: Plan) -> None:
        if plan.status == PlanStatus.PENDING:
            plan.status = PlanStatus.IN_PROGRESS
            plan.touch()
            self._store.write_plan(plan_path, plan)
            self._emit(
                PlanEvent(
                    kind=PLAN_IN_PROGRESS,
                    plan_id=plan_id,
                    message=f"Plan {plan_id} ({plan.display_title}) marked in progress",
                )
            )
        if plan.parent is not None:
            self._propagator.mark_parent_in_progress(plan_id)

    def _finish_plan(
        self,
        plan_path: Path,
        plan_id: int,
        summary: PlanExecutionSummary,
        outcome: IterationOutcome,
    ) -> None:
        plan = self._store.read_plan(plan_path)
        self._emit(
            PlanEvent(
                kind=PLAN_DONE,
                plan_id=plan_id,
                message=f"Plan {plan_id} ({plan.display_title}) is complete",
            )
        )
        if plan.parent is not None:
            summary.parents_completed = self._propagator.check_and_mark_parent_done(plan_id)
        outcome.commit_sha = self._commit_progress(outcome.commit_message, final=True)

    def _commit_progress(self, message: Optional[str], *, final: bool) -> Optional[str]:
        if not message or not self._commit or self._repo is None:
            return None
        try:
            sha = self._repo.commit_all(message)
        except GitError as error:
            if final:
                raise PostCompletionCommandError(
                    f"Plan was marked done but committing failed: {error}"
                ) from error
            raise PlanExecutionError(f"Commit failed: {error}") from error
        if sha:
            LOGGER.info("Committed %s: %s", sha[:7], message)
        return sha

    def _track_changes(self, collector: SummaryCollector) -> None:
        if self._repo is None:
            return
        try:
            changes = self._repo.working_tree_changes()
        except GitError as error:
            LOGGER.warning("Unable to list changed files: %s", error)
            return
        collector.track_changed_files([path.as_posix() for path in changes])


__all__ = [
    "BATCH_COMMIT_MESSAGE",
    "BatchStrategy",
    "ExecutionContext",
    "ExecutionStrategy",
    "IterationOutcome",
    "PlanExecutionSummary",
    "PlanExecutor",
    "SerialStrategy",
    "build_strategy",
]
