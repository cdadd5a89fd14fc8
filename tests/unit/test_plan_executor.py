from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, List

import pytest
import yaml

from planloop.cancellation import CancellationToken
from planloop.config import PlanLoopConfig
from planloop.errors import (
    ExecutionCancelledError,
    ExecutorFailureError,
    InvalidPlanIdError,
    LockHeldError,
    NoProgressError,
    PostApplyCommandError,
    PostCompletionCommandError,
)
from planloop.events import (
    EXECUTION_FAILED,
    ITERATION_COMPLETED,
    PARENT_DONE,
    PLAN_DONE,
    PLAN_IN_PROGRESS,
    UNIT_COMPLETED,
    EventRecorder,
)
from planloop.memory.schema import PlanStatus
from planloop.models.executor import ExecutionOptions, Executor, ExecutorResult, FailureDetails
from planloop.planning.executor import BATCH_COMMIT_MESSAGE, BatchStrategy, PlanExecutor, SerialStrategy
from planloop.planning.summary import SummaryCollector
from planloop.tools.vcs import GitError, GitRepository
from planloop.tools.workspace_lock import WorkspaceLock

Behaviour = Callable[[str, ExecutionOptions], "ExecutorResult | str | None"]


class ScriptedExecutor(Executor):
    """Test double that records prompts and delegates to a callable."""

    name = "scripted"

    def __init__(self, behaviour: Behaviour | None = None) -> None:
        self.behaviour = behaviour
        self.calls: List[tuple[str, ExecutionOptions]] = []

    def execute(self, prompt: str, options: ExecutionOptions):
        self.calls.append((prompt, options))
        if self.behaviour is None:
            return ExecutorResult(content="ok")
        return self.behaviour(prompt, options)


def _mark_tasks_done(path: Path, indices: List[int]) -> None:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    for index in indices:
        data["tasks"][index]["done"] = True
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")


def _git_subjects(root: Path) -> List[str]:
    result = subprocess.run(
        ["git", "log", "--format=%s"],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.splitlines()


def _runner(workspace, executor: Executor, **kwargs) -> PlanExecutor:
    kwargs.setdefault("commit", False)
    return PlanExecutor(workspace.store, executor, workspace=workspace.root, **kwargs)


def test_serial_mode_runs_one_unit_per_invocation(workspace) -> None:
    path = workspace.add(
        1,
        tasks=[
            {"title": "Stepped", "steps": [{"prompt": "write the parser"}, {"prompt": "test the parser"}]},
            {"title": "Docs", "description": "Document the parser"},
        ],
    )
    executor = ScriptedExecutor()
    recorder = EventRecorder()

    summary = _runner(workspace, executor, strategy=SerialStrategy(), events=recorder).execute(path)

    assert len(executor.calls) == 3
    first_prompt, first_options = executor.calls[0]
    assert "## Current Step\n\nwrite the parser" in first_prompt
    assert "1. [TODO] write the parser" in first_prompt
    assert first_options.plan_id == 1
    assert not first_options.batch_mode
    assert "Task 2: Docs" in executor.calls[2][0]

    assert summary.completed
    assert summary.plan.status == PlanStatus.DONE
    assert [outcome.title for outcome in summary.iterations] == [
        "Task 1, step 1: Stepped",
        "Task 1, step 2: Stepped",
        "Task 2: Docs",
    ]
    assert len(recorder.of_kind(PLAN_IN_PROGRESS)) == 1
    assert len(recorder.of_kind(UNIT_COMPLETED)) == 3
    assert len(recorder.of_kind(PLAN_DONE)) == 1
    assert [unit.success for unit in summary.collector.summary.units] == [True, True, True]


def test_batch_mode_counts_progress_from_the_plan_file(git_workspace) -> None:
    path = git_workspace.add(
        5,
        title="Batch plan",
        tasks=[{"title": f"Task {index}"} for index in range(4)],
    )
    rounds = iter([[0, 2], [1, 3]])

    def behaviour(prompt: str, options: ExecutionOptions) -> ExecutorResult:
        _mark_tasks_done(options.plan_file_path, next(rounds))
        return ExecutorResult(content="done")

    executor = ScriptedExecutor(behaviour)
    recorder = EventRecorder()
    repo = GitRepository(git_workspace.root)

    summary = PlanExecutor(
        git_workspace.store,
        executor,
        workspace=git_workspace.root,
        strategy=BatchStrategy(),
        repo=repo,
        events=recorder,
    ).execute(path)

    assert "## 4 Tasks" in executor.calls[0][0]
    assert "## 2 Tasks" in executor.calls[1][0]
    assert executor.calls[0][1].batch_mode
    assert [(o.completed_units, o.remaining) for o in summary.iterations] == [(2, 2), (2, 0)]
    assert summary.completed
    assert git_workspace.load(path)["status"] == "done"
    assert summary.collector.summary.batch_iterations == 2
    assert len(recorder.of_kind(ITERATION_COMPLETED)) == 2
    assert _git_subjects(git_workspace.root)[:2] == ["Plan complete: Batch plan", BATCH_COMMIT_MESSAGE]


def test_batch_iteration_without_progress_is_fatal(workspace) -> None:
    path = workspace.add(2, tasks=[{"title": "A"}, {"title": "B"}])
    recorder = EventRecorder()

    with pytest.raises(NoProgressError) as excinfo:
        _runner(workspace, ScriptedExecutor(), strategy=BatchStrategy(), events=recorder).execute(path)

    assert excinfo.value.remaining == 2
    assert workspace.load(path)["status"] == "in_progress"
    assert recorder.of_kind(EXECUTION_FAILED)[0].data["error"] == "NoProgressError"


def test_executor_failure_details_are_passed_through(workspace) -> None:
    path = workspace.add(3, tasks=[{"title": "Impossible"}])
    details = FailureDetails(
        requirements="Use the v1 API",
        problems="The v1 API was removed",
        solutions="Target v2 instead",
        source_agent="implementer",
    )
    executor = ScriptedExecutor(lambda prompt, options: ExecutorResult(success=False, failure_details=details))
    runner = _runner(workspace, executor, strategy=SerialStrategy())

    with pytest.raises(ExecutorFailureError) as excinfo:
        runner.execute(path)

    assert excinfo.value.details is details
    plan = workspace.store.read_plan(path)
    assert plan.status == PlanStatus.IN_PROGRESS
    assert not plan.tasks[0].done


def test_failure_keeps_collected_units(workspace) -> None:
    path = workspace.add(3, tasks=[{"title": "One"}, {"title": "Two"}])
    outcomes = iter([ExecutorResult(), ExecutorResult(success=False)])
    executor = ScriptedExecutor(lambda prompt, options: next(outcomes))
    runner = _runner(workspace, executor, strategy=SerialStrategy())
    collector = SummaryCollector(plan_id=3, plan_title="Plan 3", mode="serial")

    with pytest.raises(ExecutorFailureError):
        runner.execute(path, collector=collector)

    assert [unit.success for unit in collector.summary.units] == [True, False]
    assert collector.summary.errors
    assert collector.summary.completed is False


def test_dry_run_prints_prompt_without_side_effects(workspace) -> None:
    path = workspace.add(4, tasks=[{"title": "Only"}])
    before = path.read_text(encoding="utf-8")
    executor = ScriptedExecutor()

    summary = _runner(workspace, executor, strategy=SerialStrategy(), dry_run=True).execute(path)

    assert executor.calls == []
    assert path.read_text(encoding="utf-8") == before
    assert [outcome.dry_run for outcome in summary.iterations] == [True]
    assert not summary.completed


def test_max_steps_stops_early(workspace) -> None:
    path = workspace.add(6, tasks=[{"title": "A"}, {"title": "B"}, {"title": "C"}])
    executor = ScriptedExecutor()

    summary = _runner(workspace, executor, strategy=SerialStrategy(), max_steps=2).execute(path)

    assert len(executor.calls) == 2
    assert not summary.completed
    assert summary.plan.status == PlanStatus.IN_PROGRESS
    assert [task.done for task in summary.plan.tasks] == [True, True, False]


def test_required_post_apply_failure_stops_before_marking(workspace) -> None:
    path = workspace.add(7, tasks=[{"title": "A"}])
    config = PlanLoopConfig.from_mapping(
        {"post_apply_commands": [{"title": "lint", "command": "exit 3"}]}
    )

    with pytest.raises(PostApplyCommandError) as excinfo:
        _runner(workspace, ScriptedExecutor(), config=config, strategy=SerialStrategy()).execute(path)

    assert excinfo.value.title == "lint"
    assert excinfo.value.exit_code == 3
    assert not workspace.store.read_plan(path).tasks[0].done


def test_allowed_post_apply_failure_continues(workspace) -> None:
    path = workspace.add(7, tasks=[{"title": "A"}])
    config = PlanLoopConfig.from_mapping(
        {"post_apply_commands": [{"title": "lint", "command": "exit 3", "allow_failure": True}]}
    )

    summary = _runner(workspace, ScriptedExecutor(), config=config, strategy=SerialStrategy()).execute(path)

    assert summary.completed


def test_cancellation_is_checked_between_iterations(workspace) -> None:
    path = workspace.add(8, tasks=[{"title": "A"}, {"title": "B"}])
    token = CancellationToken()

    def behaviour(prompt: str, options: ExecutionOptions) -> str:
        token.cancel("SIGINT")
        return "done"

    executor = ScriptedExecutor(behaviour)
    runner = _runner(workspace, executor, strategy=SerialStrategy(), cancellation=token)

    with pytest.raises(ExecutionCancelledError):
        runner.execute(path)

    assert len(executor.calls) == 1
    assert [task.done for task in workspace.store.read_plan(path).tasks] == [True, False]


def test_completing_a_child_marks_container_parent(workspace) -> None:
    parent = workspace.add(10, container=True)
    child = workspace.add(11, parent=10, tasks=[{"title": "Child work"}])
    recorder = EventRecorder()

    summary = _runner(workspace, ScriptedExecutor(), strategy=SerialStrategy(), events=recorder).execute(child)

    assert summary.parents_completed == [10]
    assert workspace.load(parent)["status"] == "done"
    assert len(recorder.of_kind(PARENT_DONE)) == 1


def test_non_numeric_plan_id_is_rejected(workspace) -> None:
    path = workspace.add("draft", filename="draft.yml", tasks=[{"title": "A"}])

    with pytest.raises(InvalidPlanIdError):
        _runner(workspace, ScriptedExecutor()).execute(path)


def test_workspace_lock_is_held_during_the_run(workspace, tmp_path) -> None:
    path = workspace.add(12, tasks=[{"title": "A"}])
    lock = WorkspaceLock(lock_dir=tmp_path / "locks")
    seen = []

    def behaviour(prompt: str, options: ExecutionOptions) -> str:
        seen.append(lock.read_record(workspace.root))
        return "done"

    _runner(workspace, ScriptedExecutor(behaviour), strategy=SerialStrategy(), lock=lock).execute(path)

    assert seen[0] is not None
    assert seen[0].pid == lock.pid
    assert not lock.lock_path(workspace.root).exists()


def test_live_lock_holder_blocks_the_run(workspace, tmp_path) -> None:
    path = workspace.add(13, tasks=[{"title": "A"}])
    holder = WorkspaceLock(lock_dir=tmp_path / "locks", pid=999_999, process_alive=lambda pid: True)
    holder.acquire(workspace.root, "planloop run other")
    contender = WorkspaceLock(lock_dir=tmp_path / "locks", process_alive=lambda pid: True)
    executor = ScriptedExecutor()

    with pytest.raises(LockHeldError) as excinfo:
        _runner(workspace, executor, strategy=SerialStrategy(), lock=contender).execute(path)

    assert excinfo.value.holder_pid == 999_999
    assert executor.calls == []


class RejectingRepository:
    """Repository double whose commits always fail."""

    def __init__(self) -> None:
        self.messages: List[str] = []

    def working_tree_changes(self) -> List[Path]:
        return []

    def commit_all(self, message: str) -> str:
        self.messages.append(message)
        raise GitError("pre-commit hook rejected the commit")


def test_failed_final_commit_keeps_the_plan_done(workspace) -> None:
    path = workspace.add(14, tasks=[{"title": "A"}])
    repo = RejectingRepository()
    recorder = EventRecorder()
    runner = _runner(
        workspace,
        ScriptedExecutor(),
        strategy=SerialStrategy(),
        repo=repo,
        commit=True,
        events=recorder,
    )

    with pytest.raises(PostCompletionCommandError):
        runner.execute(path)

    assert len(repo.messages) == 1
    assert workspace.load(path)["status"] == "done"
    assert recorder.of_kind(EXECUTION_FAILED)[0].data["error"] == "PostCompletionCommandError"


def test_failure_on_first_step_stops_the_serial_run(workspace) -> None:
    path = workspace.add(
        15,
        tasks=[{"title": "Stepped", "steps": [{"prompt": "one"}, {"prompt": "two"}, {"prompt": "three"}]}],
    )
    executor = ScriptedExecutor(lambda prompt, options: ExecutorResult(success=False))

    with pytest.raises(ExecutorFailureError):
        _runner(workspace, executor, strategy=SerialStrategy()).execute(path)

    assert len(executor.calls) == 1
    task = workspace.store.read_plan(path).tasks[0]
    assert [step.done for step in task.steps] == [False, False, False]
    assert not task.done


def test_unexpected_executor_error_becomes_a_typed_failure(workspace) -> None:
    path = workspace.add(16, tasks=[{"title": "A"}])
    recorder = EventRecorder()

    def behaviour(prompt: str, options: ExecutionOptions) -> ExecutorResult:
        raise ValueError("agent crashed")

    collector = SummaryCollector(plan_id=16, plan_title="Plan 16", mode="serial")
    runner = _runner(workspace, ScriptedExecutor(behaviour), strategy=SerialStrategy(), events=recorder)

    with pytest.raises(ExecutorFailureError) as excinfo:
        runner.execute(path, collector=collector)

    assert isinstance(excinfo.value.__cause__, ValueError)
    assert "agent crashed" in str(excinfo.value)
    assert recorder.of_kind(EXECUTION_FAILED)[0].data["error"] == "ExecutorFailureError"
    assert [unit.success for unit in collector.summary.units] == [False]


def test_workspace_lock_is_released_after_a_fatal_error(workspace, tmp_path) -> None:
    path = workspace.add(17, tasks=[{"title": "A"}])
    lock = WorkspaceLock(lock_dir=tmp_path / "locks")
    executor = ScriptedExecutor(lambda prompt, options: ExecutorResult(success=False))

    with pytest.raises(ExecutorFailureError):
        _runner(workspace, executor, strategy=SerialStrategy(), lock=lock).execute(path)

    assert not lock.lock_path(workspace.root).exists()
    assert lock.acquire(workspace.root).record.pid == lock.pid
