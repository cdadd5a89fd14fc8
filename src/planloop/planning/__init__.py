"""
Plan selection, scheduling and parent status propagation.
"""

from importlib import import_module
from typing import Any

_EXPORTS = {
    "BatchStrategy": "planloop.planning.executor",
    "PlanExecutionSummary": "planloop.planning.executor",
    "PlanExecutor": "planloop.planning.executor",
    "SerialStrategy": "planloop.planning.executor",
    "DependencyResult": "planloop.planning.graph",
    "find_next_plan": "planloop.planning.graph",
    "find_next_ready_dependency": "planloop.planning.graph",
    "is_plan_ready": "planloop.planning.graph",
    "ParentPropagator": "planloop.planning.parents",
}

__all__ = sorted(_EXPORTS)


def __getattr__(name: str) -> Any:
    """Lazily import planning helpers so submodules can import each other freely."""
    if name in _EXPORTS:
        module = import_module(_EXPORTS[name])
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
