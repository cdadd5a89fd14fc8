"""Keep parent plan status consistent with the progress of their children."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from ..errors import ParentCycleError
from ..events import PARENT_DONE, PARENT_IN_PROGRESS, EventSink, PlanEvent, log_event
from ..memory.schema import Plan, PlanStatus
from ..memory.store import PlanStore

LOGGER = logging.getLogger(__name__)


class ParentPropagator:
    """Cascade status transitions up the ``parent`` chain.

    Both operations reload the plan collection before acting and are safe to
    call repeatedly: a parent that already has the target status is left alone
    and produces no event.
    """

    def __init__(self, store: PlanStore, *, events: EventSink | None = None) -> None:
        self._store = store
        self._emit = events or log_event

    # ------------------------------------------------------------------ public
    def mark_parent_in_progress(self, plan_id: int) -> List[int]:
        """Move every non-terminal ancestor of ``plan_id`` to ``in_progress``.

        Returns the ids of the ancestors that were updated.
        """

        plans = self._store.list_plans()
        updated: List[int] = []
        for parent in self._ancestors(plan_id, plans):
            if parent.status == PlanStatus.IN_PROGRESS or parent.status.is_terminal:
                continue
            parent.status = PlanStatus.IN_PROGRESS
            parent.touch()
            self._store.write_plan(parent.filename, parent)
            parent_id = parent.numeric_id
            updated.append(parent_id)
            self._emit(
                PlanEvent(
                    kind=PARENT_IN_PROGRESS,
                    plan_id=parent_id,
                    message=f"Parent plan {parent_id} ({parent.display_title}) marked in progress",
                    data={"child": plan_id},
                )
            )
        return updated

    def check_and_mark_parent_done(self, plan_id: int) -> List[int]:
        """Mark ancestors ``done`` once all of their children are finished.

        Walks upward from the parent of ``plan_id`` and stops at the first
        ancestor that is not eligible. Returns the ids marked done.
        """

        completed: List[int] = []
        chain: List[int] = [plan_id]
        plans = self._store.list_plans()
        current = plans.get(plan_id)
        if current is None:
            LOGGER.warning("Plan %s not found while checking parent completion", plan_id)
            return completed

        parent_id = current.parent
        while parent_id is not None:
            if parent_id in chain:
                raise ParentCycleError([*chain, parent_id])
            chain.append(parent_id)

            parent = plans.get(parent_id)
            if parent is None:
                LOGGER.warning("Parent plan with ID %s not found", parent_id)
                break
            if parent.status.is_terminal:
                break
            if not self._eligible_for_done(parent, parent_id, plans):
                break

            members = self._members(parent, parent_id, plans)
            parent.status = PlanStatus.DONE
            parent.touch()
            changed = _merge_changed_files(members)
            if changed:
                parent.changed_files = changed
            self._store.write_plan(parent.filename, parent)
            completed.append(parent_id)
            self._emit(
                PlanEvent(
                    kind=PARENT_DONE,
                    plan_id=parent_id,
                    message=f"Parent plan {parent_id} ({parent.display_title}) marked as complete (all children done)",
                    data={"changed_files": list(changed)},
                )
            )
            parent_id = parent.parent
        return completed

    # ----------------------------------------------------------------- helpers
    def _ancestors(self, plan_id: int, plans: Dict[int, Plan]) -> List[Plan]:
        chain: List[int] = [plan_id]
        ancestors: List[Plan] = []
        current = plans.get(plan_id)
        if current is None:
            LOGGER.warning("Plan %s not found while marking parents in progress", plan_id)
            return ancestors
        parent_id: Optional[int] = current.parent
        while parent_id is not None:
            if parent_id in chain:
                raise ParentCycleError([*chain, parent_id])
            chain.append(parent_id)
            parent = plans.get(parent_id)
            if parent is None:
                LOGGER.warning("Parent plan with ID %s not found", parent_id)
                break
            ancestors.append(parent)
            parent_id = parent.parent
        return ancestors

    @staticmethod
    def _members(parent: Plan, parent_id: int, plans: Dict[int, Plan]) -> List[Optional[Plan]]:
        ids: List[int] = [plan_id for plan_id in sorted(plans) if plans[plan_id].parent == parent_id]
        for dependency_id in parent.dependencies:
            if dependency_id not in ids:
                ids.append(dependency_id)
        return [plans.get(member_id) for member_id in ids]

    def _eligible_for_done(self, parent: Plan, parent_id: int, plans: Dict[int, Plan]) -> bool:
        members = self._members(parent, parent_id, plans)
        if not members:
            return False
        return all(member is not None and member.status.is_terminal for member in members)


def _merge_changed_files(members: List[Optional[Plan]]) -> List[str]:
    merged: List[str] = []
    seen: set[str] = set()
    for member in members:
        if member is None or not member.changed_files:
            continue
        for path in member.changed_files:
            if path not in seen:
                seen.add(path)
                merged.append(path)
    return merged


__all__ = ["ParentPropagator"]
