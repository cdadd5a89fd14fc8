"""Convenience exports for planloop executor implementations."""

from .command import DEFAULT_EXECUTOR, CommandExecutor, CopyOnlyExecutor, build_executor
from .executor import (
    ExecutionMode,
    ExecutionOptions,
    Executor,
    ExecutorResult,
    FailureDetails,
    parse_failed_report,
)

__all__ = [
    "CommandExecutor",
    "CopyOnlyExecutor",
    "DEFAULT_EXECUTOR",
    "ExecutionMode",
    "ExecutionOptions",
    "Executor",
    "ExecutorResult",
    "FailureDetails",
    "build_executor",
    "parse_failed_report",
]
