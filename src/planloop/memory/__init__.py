"""Plan records and their file-backed store."""

from .schema import Plan, PlanStatus, Priority, Step, Task, utc_now
from .store import PlanStore

__all__ = ["Plan", "PlanStatus", "PlanStore", "Priority", "Step", "Task", "utc_now"]
