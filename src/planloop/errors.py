"""Exception hierarchy shared by the plan runner components."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models.executor import FailureDetails

__all__ = [
    "ExecutionCancelledError",
    "ExecutorFailureError",
    "InvalidPlanIdError",
    "LockHeldError",
    "NoProgressError",
    "ParentCycleError",
    "PlanExecutionError",
    "PlanFileError",
    "PlanLoopError",
    "PlanNotFoundError",
    "PostApplyCommandError",
    "PostCompletionCommandError",
]


class PlanLoopError(RuntimeError):
    """Base class for all errors raised by planloop."""


class PlanNotFoundError(PlanLoopError):
    """Raised when a plan file path or numeric plan id cannot be resolved."""


class InvalidPlanIdError(PlanLoopError):
    """Raised when a numeric plan id is required but the plan carries none."""


class PlanFileError(PlanLoopError):
    """Raised when a plan file cannot be parsed or fails validation."""


class LockHeldError(PlanLoopError):
    """Raised when a workspace is locked by another live process."""

    def __init__(self, message: str, *, holder_pid: int | None = None) -> None:
        super().__init__(message)
        self.holder_pid = holder_pid


class ParentCycleError(PlanLoopError):
    """Raised when a parent chain revisits a plan during status propagation."""

    def __init__(self, chain: list[int]) -> None:
        rendered = " -> ".join(str(item) for item in chain)
        super().__init__(f"Parent chain contains a cycle: {rendered}")
        self.chain = list(chain)


class PlanExecutionError(PlanLoopError):
    """Fatal condition that stops a scheduler run."""


class ExecutorFailureError(PlanExecutionError):
    """The executor reported failure; ``details`` is passed through untouched."""

    def __init__(self, message: str, *, details: "FailureDetails | None" = None) -> None:
        super().__init__(message)
        self.details = details


class NoProgressError(PlanExecutionError):
    """A batch iteration finished without completing any task."""

    def __init__(self, message: str, *, remaining: int) -> None:
        super().__init__(message)
        self.remaining = remaining


class PostApplyCommandError(PlanExecutionError):
    """A required post-apply command failed after an executor unit."""

    def __init__(self, message: str, *, title: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.title = title
        self.exit_code = exit_code


class PostCompletionCommandError(PlanExecutionError):
    """A side effect failed after the plan was already persisted as done."""


class ExecutionCancelledError(PlanExecutionError):
    """The run was cancelled at an iteration boundary."""
