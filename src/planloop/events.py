"""Scheduler events published to observers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger(__name__)

PLAN_IN_PROGRESS = "plan_in_progress"
PARENT_IN_PROGRESS = "parent_in_progress"
PARENT_DONE = "parent_done"
UNIT_COMPLETED = "unit_completed"
ITERATION_COMPLETED = "iteration_completed"
PLAN_DONE = "plan_done"
EXECUTION_FAILED = "execution_failed"


@dataclass(slots=True)
class PlanEvent:
    """A state transition observed while running a plan."""

    kind: str
    plan_id: Optional[int]
    message: str
    data: Dict[str, Any] = field(default_factory=dict)


EventSink = Callable[[PlanEvent], None]


def log_event(event: PlanEvent) -> None:
    """Default sink: write the event to the module logger."""
    LOGGER.info("[%s] %s", event.kind, event.message)


class EventRecorder:
    """Sink that keeps every event; handy for tests and summaries."""

    def __init__(self, forward: EventSink | None = None) -> None:
        self.events: List[PlanEvent] = []
        self._forward = forward

    def __call__(self, event: PlanEvent) -> None:
        self.events.append(event)
        if self._forward is not None:
            self._forward(event)

    def of_kind(self, kind: str) -> List[PlanEvent]:
        return [event for event in self.events if event.kind == kind]


__all__ = [
    "EXECUTION_FAILED",
    "EventRecorder",
    "EventSink",
    "ITERATION_COMPLETED",
    "PARENT_DONE",
    "PARENT_IN_PROGRESS",
    "PLAN_DONE",
    "PLAN_IN_PROGRESS",
    "PlanEvent",
    "UNIT_COMPLETED",
    "log_event",
]
