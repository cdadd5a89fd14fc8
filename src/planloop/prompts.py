"""Prompt templates handed to executors."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

from .memory.schema import Plan, Task
from .planning.actionable import ActionableItem, IncompleteTask

COMPLETION_INSTRUCTION = (
    "When you finish a task, record it in the plan file by setting `done: true` on the task "
    "(and on each of its completed steps). Do not mark work done that you did not complete."
)
FAILURE_INSTRUCTION = (
    "If the requirements conflict or cannot be met, stop and print a line starting with "
    "'FAILED:' followed by Requirements, Problems and Possible solutions sections."
)


def render_plan_context(plan: Plan, plan_file: Path) -> str:
    """Format the plan header shared by every prompt."""
    lines = [
        f"# Plan {plan.numeric_id if plan.numeric_id is not None else ''}: {plan.display_title}".rstrip(),
        "",
        f"Plan file: {plan_file.as_posix()}",
        "",
        "## Goal",
        plan.goal.strip(),
    ]
    if plan.details and plan.details.strip():
        lines.extend(["", "## Details", plan.details.strip()])
    return "\n".join(lines)


def render_task(task_index: int, task: Task) -> str:
    """Render one task with step status markers."""
    text = f"Task {task_index + 1}: {task.title}"
    if task.description:
        text += f"\nDescription: {task.description}"
    if task.steps:
        text += "\nSteps:"
        for step_index, step in enumerate(task.steps):
            status = "[DONE]" if step.done else "[TODO]"
            text += f"\n  {step_index + 1}. {status} {step.prompt}"
    if task.files:
        text += f"\nFiles: {', '.join(task.files)}"
    return text


def build_unit_prompt(plan: Plan, plan_file: Path, item: ActionableItem) -> str:
    """Prompt for a single task or step (serial mode)."""
    sections = [render_plan_context(plan, plan_file), "## Current Task", render_task(item.task_index, item.task)]
    if item.kind == "step" and item.step is not None:
        sections.extend(["## Current Step", item.step.prompt.strip()])
    else:
        sections.append(COMPLETION_INSTRUCTION)
    sections.append(FAILURE_INSTRUCTION)
    return "\n\n".join(sections)


def build_batch_prompt(plan: Plan, plan_file: Path, incomplete: Sequence[IncompleteTask]) -> str:
    """Prompt covering every incomplete task (batch mode)."""
    descriptions = "\n\n".join(render_task(entry.task_index, entry.task) for entry in incomplete)
    sections = [
        render_plan_context(plan, plan_file),
        f"## {len(incomplete)} Tasks",
        (
            "Please select and complete a logical subset of the following incomplete tasks "
            "that makes sense to work on together:"
        ),
        descriptions,
        COMPLETION_INSTRUCTION,
        FAILURE_INSTRUCTION,
    ]
    return "\n\n".join(sections)


__all__ = [
    "COMPLETION_INSTRUCTION",
    "FAILURE_INSTRUCTION",
    "build_batch_prompt",
    "build_unit_prompt",
    "render_plan_context",
    "render_task",
]
