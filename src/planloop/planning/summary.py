"""Collect per-unit results of a run for display or JSON export."""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..memory.schema import utc_now
from ..memory.store import atomic_write_text
from ..models.executor import FailureDetails


@dataclass(slots=True)
class UnitResult:
    """One executor invocation (a step, a task or a batch iteration)."""

    title: str
    executor: str
    success: bool
    started_at: str
    ended_at: str
    duration_ms: int
    iteration: int
    error_message: Optional[str] = None
    failure_details: Optional[Dict[str, Any]] = None


@dataclass(slots=True)
class ExecutionSummary:
    plan_id: Optional[int]
    plan_title: str
    mode: str
    started_at: str
    ended_at: Optional[str] = None
    units: List[UnitResult] = field(default_factory=list)
    batch_iterations: int = 0
    changed_files: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    completed: bool = False


class SummaryCollector:
    """Accumulates results while a plan runs."""

    def __init__(self, *, plan_id: Optional[int], plan_title: str, mode: str) -> None:
        self.summary = ExecutionSummary(
            plan_id=plan_id,
            plan_title=plan_title,
            mode=mode,
            started_at=utc_now().isoformat(),
        )
        self._unit_started: Optional[float] = None
        self._unit_started_at: Optional[datetime] = None

    def start_unit(self) -> None:
        self._unit_started = time.monotonic()
        self._unit_started_at = utc_now()

    def add_unit_result(
        self,
        *,
        title: str,
        executor: str,
        success: bool,
        iteration: int,
        error_message: Optional[str] = None,
        failure_details: Optional[FailureDetails] = None,
    ) -> UnitResult:
        started_at = self._unit_started_at or utc_now()
        elapsed = time.monotonic() - self._unit_started if self._unit_started is not None else 0.0
        result = UnitResult(
            title=title,
            executor=executor,
            success=success,
            started_at=started_at.isoformat(),
            ended_at=utc_now().isoformat(),
            duration_ms=int(elapsed * 1000),
            iteration=iteration,
            error_message=error_message,
            failure_details=failure_details.to_dict() if failure_details else None,
        )
        self.summary.units.append(result)
        self._unit_started = None
        self._unit_started_at = None
        return result

    def add_error(self, error: BaseException | str) -> None:
        self.summary.errors.append(str(error))

    def set_batch_iterations(self, count: int) -> None:
        self.summary.batch_iterations = count

    def track_changed_files(self, paths: List[str]) -> None:
        for path in paths:
            if path not in self.summary.changed_files:
                self.summary.changed_files.append(path)

    def finish(self, *, completed: bool) -> ExecutionSummary:
        self.summary.completed = completed
        self.summary.ended_at = utc_now().isoformat()
        return self.summary

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self.summary)

    def write_json(self, path: Path) -> None:
        atomic_write_text(path, json.dumps(self.to_dict(), indent=2) + "\n")


__all__ = ["ExecutionSummary", "SummaryCollector", "UnitResult"]
