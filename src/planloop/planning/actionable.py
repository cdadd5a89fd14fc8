"""Locate the next unit of work inside a plan."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Literal, Optional

from ..memory.schema import Plan, Step, Task


@dataclass(slots=True)
class ActionableItem:
    """The next task (step-less) or step to hand to the executor."""

    kind: Literal["task", "step"]
    task_index: int
    task: Task
    step_index: Optional[int] = None
    step: Optional[Step] = None

    @property
    def label(self) -> str:
        if self.kind == "step" and self.step_index is not None:
            return f"Task {self.task_index + 1}, step {self.step_index + 1}: {self.task.title}"
        return f"Task {self.task_index + 1}: {self.task.title}"


@dataclass(slots=True)
class IncompleteTask:
    task_index: int
    task: Task


def is_task_complete(task: Task) -> bool:
    return task.is_complete


def is_plan_complete(plan: Plan) -> bool:
    """A plan is complete when none of its tasks has outstanding work."""
    return all(is_task_complete(task) for task in plan.tasks)


def find_next_actionable_item(plan: Plan) -> Optional[ActionableItem]:
    """Return the first incomplete task or step in document order."""

    for task_index, task in enumerate(plan.tasks):
        if task.steps:
            for step_index, step in enumerate(task.steps):
                if not step.done:
                    return ActionableItem(
                        kind="step",
                        task_index=task_index,
                        task=task,
                        step_index=step_index,
                        step=step,
                    )
            continue
        if not task.done:
            return ActionableItem(kind="task", task_index=task_index, task=task)
    return None


def get_all_incomplete_tasks(plan: Plan) -> List[IncompleteTask]:
    return [
        IncompleteTask(task_index=index, task=task)
        for index, task in enumerate(plan.tasks)
        if not is_task_complete(task)
    ]


__all__ = [
    "ActionableItem",
    "IncompleteTask",
    "find_next_actionable_item",
    "get_all_incomplete_tasks",
    "is_plan_complete",
    "is_task_complete",
]
