"""Readiness checks and next-plan selection over the plan graph.

The graph combines two edge kinds: a plan's explicit ``dependencies`` and the
children that name it as ``parent``. Resolution walks both breadth-first from a
parent plan, so a child is treated as a dependency of its container.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from ..memory.schema import Plan, PlanStatus, priority_rank

LOGGER = logging.getLogger(__name__)

PlanGraph = Mapping[int, Plan]


@dataclass(slots=True)
class DependencyResult:
    """Outcome of :func:`find_next_ready_dependency`.

    ``plan`` is ``None`` when nothing can run right now; ``message`` says why.
    """

    plan: Optional[Plan]
    message: str


def is_plan_ready(plan: Plan, plans: PlanGraph) -> bool:
    """Return ``True`` when every listed dependency exists and is ``done``."""

    for dependency_id in plan.dependencies:
        dependency = plans.get(dependency_id)
        if dependency is None or dependency.status != PlanStatus.DONE:
            return False
    return True


def children_index(plans: PlanGraph) -> Dict[int, List[int]]:
    """Map each parent id to its child ids in ascending id order."""

    index: Dict[int, List[int]] = {}
    for plan_id in sorted(plans):
        parent = plans[plan_id].parent
        if parent is not None:
            index.setdefault(parent, []).append(plan_id)
    return index


def _neighbours(plan: Plan, plan_id: int, children: Mapping[int, List[int]]) -> Iterable[int]:
    yield from plan.dependencies
    yield from children.get(plan_id, ())


def walk_dependencies(parent_id: int, plans: PlanGraph) -> List[Plan]:
    """Return plans reachable from ``parent_id`` in breadth-first discovery order.

    The parent itself is excluded. Plans referenced but missing from ``plans``
    are skipped. Each id is visited once, so cycles terminate.
    """

    parent = plans.get(parent_id)
    if parent is None:
        return []
    children = children_index(plans)
    visited = {parent_id}
    queue = deque(_neighbours(parent, parent_id, children))
    discovered: List[Plan] = []
    while queue:
        current_id = queue.popleft()
        if current_id in visited:
            continue
        visited.add(current_id)
        current = plans.get(current_id)
        if current is None:
            LOGGER.debug("Dependency %s of plan %s is missing", current_id, parent_id)
            continue
        LOGGER.debug("Visiting plan %s (%s)", current_id, current.status.value)
        discovered.append(current)
        queue.extend(_neighbours(current, current_id, children))
    return discovered


def _selectable(plan: Plan) -> bool:
    return plan.status == PlanStatus.PENDING and not plan.container


def _describe(plan: Plan) -> str:
    return f"{plan.numeric_id} - {plan.display_title}"


def _not_found_message(parent_id: int) -> str:
    return (
        f"Plan not found: {parent_id}\n"
        "Try:\n"
        "  → Check the plan ID is correct\n"
        "  → Run 'planloop ready' to see plans that can be worked on"
    )


def find_next_ready_dependency(parent_id: int, plans: PlanGraph) -> DependencyResult:
    """Find the next plan to work on underneath ``parent_id``.

    An ``in_progress`` plan anywhere in the walk wins (first discovered).
    Otherwise the ready ``pending`` plan with the highest priority is chosen,
    ties going to the earliest discovered. Container plans and plans without
    tasks are walked through but never selected.
    """

    parent = plans.get(parent_id)
    if parent is None:
        return DependencyResult(plan=None, message=_not_found_message(parent_id))

    discovered = walk_dependencies(parent_id, plans)
    if not discovered:
        return DependencyResult(plan=None, message="No dependencies found for this plan")

    for plan in discovered:
        if plan.status == PlanStatus.IN_PROGRESS and not plan.container:
            return DependencyResult(plan=plan, message=f"Found in-progress plan: {_describe(plan)}")

    ready = [
        (position, plan)
        for position, plan in enumerate(discovered)
        if _selectable(plan) and plan.tasks and is_plan_ready(plan, plans)
    ]
    if ready:
        ready.sort(key=lambda item: (-priority_rank(item[1].priority), item[0]))
        selected = ready[0][1]
        return DependencyResult(plan=selected, message=f"Found ready plan: {_describe(selected)}")

    if all(plan.status.is_terminal for plan in discovered):
        message = "No ready dependencies found. All dependencies are complete"
        if not parent.status.is_terminal:
            message += "; ready to work on the parent plan"
        return DependencyResult(plan=None, message=f"{message}.")

    pending = [plan for plan in discovered if _selectable(plan)]
    blocked = sum(1 for plan in pending if not is_plan_ready(plan, plans))
    empty = sum(1 for plan in pending if not plan.tasks and is_plan_ready(plan, plans))
    message = (
        "No ready or pending dependencies found. "
        f"{blocked} dependencies are blocked by incomplete prerequisites."
    )
    if empty:
        message += f" {empty} dependencies have no actionable tasks; add tasks to them first."
    return DependencyResult(plan=None, message=message)


def list_ready_plans(plans: PlanGraph, *, include_in_progress: bool = False) -> List[Plan]:
    """Return runnable plans ordered by status, priority and id."""

    statuses = {PlanStatus.PENDING}
    if include_in_progress:
        statuses.add(PlanStatus.IN_PROGRESS)
    candidates = [
        plan
        for plan in plans.values()
        if plan.status in statuses
        and not plan.container
        and (plan.status == PlanStatus.IN_PROGRESS or is_plan_ready(plan, plans))
    ]
    candidates.sort(
        key=lambda plan: (
            0 if plan.status == PlanStatus.IN_PROGRESS else 1,
            -priority_rank(plan.priority),
            plan.numeric_id or 0,
        )
    )
    return candidates


def find_next_plan(
    plans: PlanGraph,
    *,
    include_pending: bool = True,
    include_in_progress: bool = False,
) -> Optional[Plan]:
    """Pick the single best plan across the whole collection."""

    statuses = set()
    if include_pending:
        statuses.add(PlanStatus.PENDING)
    if include_in_progress:
        statuses.add(PlanStatus.IN_PROGRESS)
    for plan in list_ready_plans(plans, include_in_progress=include_in_progress):
        if plan.status in statuses:
            return plan
    return None


__all__ = [
    "DependencyResult",
    "PlanGraph",
    "children_index",
    "find_next_plan",
    "find_next_ready_dependency",
    "is_plan_ready",
    "list_ready_plans",
    "walk_dependencies",
]
