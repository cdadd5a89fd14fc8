"""Typed records for plan files and the tasks/steps they own."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

# Keys every persisted plan carries, in document order.
REQUIRED_PLAN_KEYS: tuple[str, ...] = ("id", "title", "goal", "status", "tasks")


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base model for plan file records.

    Unknown keys are kept so files written by other tools round-trip intact.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, validate_assignment=True)


class PlanStatus(str, Enum):
    """Lifecycle states for a plan."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    CANCELLED = "cancelled"
    DEFERRED = "deferred"

    @property
    def is_terminal(self) -> bool:
        return self in {PlanStatus.DONE, PlanStatus.CANCELLED}


class Priority(str, Enum):
    """Scheduling priority for a plan."""

    MAYBE = "maybe"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK: Dict[Priority, int] = {
    Priority.URGENT: 5,
    Priority.HIGH: 4,
    Priority.MEDIUM: 3,
    Priority.LOW: 2,
    Priority.MAYBE: 1,
}


def priority_rank(priority: Optional[Priority]) -> int:
    """Rank used for sorting; an unset priority sorts below ``maybe``."""
    if priority is None:
        return 0
    return priority.rank


class Step(RecordModel):
    """Smallest executable unit, carrying the prompt for the executor."""

    prompt: str
    done: bool = False


class Task(RecordModel):
    """Named unit of work inside a plan."""

    title: str
    description: str = ""
    done: bool = False
    files: List[str] = Field(default_factory=list)
    steps: List[Step] = Field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        if self.steps:
            return all(step.done for step in self.steps)
        return self.done


class Plan(RecordModel):
    """A persisted unit of work with status, hierarchy links and tasks."""

    id: Optional[Union[int, str]] = None
    title: str = ""
    goal: str
    details: Optional[str] = None
    status: PlanStatus = PlanStatus.PENDING
    priority: Optional[Priority] = None
    container: bool = False
    simple: Optional[bool] = None
    parent: Optional[int] = None
    dependencies: List[int] = Field(default_factory=list)
    changed_files: Optional[List[str]] = Field(default=None, alias="changedFiles")
    base_branch: Optional[str] = Field(default=None, alias="baseBranch")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    tasks: List[Task] = Field(default_factory=list)

    # Location on disk; never serialised.
    filename: Optional[Path] = Field(default=None, exclude=True)

    @property
    def numeric_id(self) -> Optional[int]:
        if isinstance(self.id, int) and not isinstance(self.id, bool):
            return self.id
        return None

    @property
    def display_title(self) -> str:
        return self.title or self.goal

    def touch(self) -> None:
        """Refresh the modification timestamp."""
        self.updated_at = utc_now()

    def to_document(self) -> Dict[str, Any]:
        """Return the mapping written to disk.

        Optional fields that were never set are left out so that a read/write
        cycle does not add noise to the file.
        """
        payload = self.model_dump(
            mode="json",
            by_alias=True,
            exclude_unset=True,
            exclude_none=True,
        )
        full = self.model_dump(mode="json", by_alias=True, include=set(REQUIRED_PLAN_KEYS))
        document: Dict[str, Any] = {}
        for key in REQUIRED_PLAN_KEYS:
            if key == "id" and full.get("id") is None:
                continue
            document[key] = payload.get(key, full[key])
        for key, value in payload.items():
            if key not in document:
                document[key] = value
        # ``tasks`` reads best at the end of the file.
        document["tasks"] = document.pop("tasks")
        return document
