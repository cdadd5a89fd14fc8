"""Read-modify-write helpers that record completed tasks and steps."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..errors import PlanLoopError
from ..memory.schema import Plan, PlanStatus
from ..memory.store import PlanStore
from .actionable import find_next_actionable_item

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class MarkDoneResult:
    plan: Plan
    plan_complete: bool
    message: str


def _finish(store: PlanStore, path: Path, plan: Plan, message: str) -> MarkDoneResult:
    plan.touch()
    plan_complete = find_next_actionable_item(plan) is None
    if plan_complete:
        plan.status = PlanStatus.DONE
    store.write_plan(path, plan)
    LOGGER.info(message)
    return MarkDoneResult(plan=plan, plan_complete=plan_complete, message=message)


def mark_step_done(store: PlanStore, path: Path | str, task_index: int, step_index: int) -> MarkDoneResult:
    """Mark one step done and persist; the plan becomes ``done`` when nothing is left."""

    plan_path = Path(path)
    plan = store.read_plan(plan_path)
    if not 0 <= task_index < len(plan.tasks):
        raise PlanLoopError(f"Invalid task index {task_index} for plan {plan_path}")
    task = plan.tasks[task_index]
    if not 0 <= step_index < len(task.steps):
        raise PlanLoopError(f"Invalid step index {step_index} for task {task_index + 1} in {plan_path}")
    task.steps[step_index].done = True
    if task.is_complete:
        task.done = True
    return _finish(
        store,
        plan_path,
        plan,
        f"Marked step {step_index + 1} of task {task_index + 1} done: {task.title}",
    )


def mark_task_done(store: PlanStore, path: Path | str, task_index: int) -> MarkDoneResult:
    """Mark a task and all of its steps done and persist."""

    plan_path = Path(path)
    plan = store.read_plan(plan_path)
    if not 0 <= task_index < len(plan.tasks):
        raise PlanLoopError(f"Invalid task index {task_index} for plan {plan_path}")
    task = plan.tasks[task_index]
    for step in task.steps:
        if not step.done:
            step.done = True
    task.done = True
    return _finish(store, plan_path, plan, f"Marked task {task_index + 1} done: {task.title}")


__all__ = ["MarkDoneResult", "mark_step_done", "mark_task_done"]
