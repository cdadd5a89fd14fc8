"""File-backed storage for plan records."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

import yaml
from pydantic import ValidationError

from ..errors import InvalidPlanIdError, PlanFileError, PlanNotFoundError
from .schema import Plan, PlanStatus

LOGGER = logging.getLogger(__name__)

SCHEMA_MARKER = (
    "# yaml-language-server: $schema="
    "https://raw.githubusercontent.com/dimfeld/llmutils/main/schema/rmplan-plan-schema.json"
)
PLAN_SUFFIXES: tuple[str, ...] = (".yml", ".yaml")
DEFAULT_TASKS_DIR = Path("tasks")


def require_numeric_id(value: Any) -> int:
    """Return ``value`` as a plan id or raise :class:`InvalidPlanIdError`."""

    if isinstance(value, bool):
        raise InvalidPlanIdError(f"Invalid plan id: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    raise InvalidPlanIdError(f"Plan id must be numeric, got {value!r}")


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` through a temp file and ``os.replace`` it into place."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def render_plan(plan: Plan) -> str:
    """Serialise ``plan`` to the on-disk text form (marker line + YAML body)."""

    body = yaml.safe_dump(
        plan.to_document(),
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        width=120,
    )
    return f"{SCHEMA_MARKER}\n{body}"


class PlanStore:
    """Read and write plan files below a tasks directory.

    Every mutation is a full read-modify-write of one file; nothing is cached
    between calls because executors rewrite plan files as they work.
    """

    def __init__(self, tasks_dir: Path | str = DEFAULT_TASKS_DIR) -> None:
        self.tasks_dir = Path(tasks_dir).resolve()

    # ------------------------------------------------------------------ files
    def read_plan(self, path: Path | str) -> Plan:
        plan_path = Path(path)
        if not plan_path.exists():
            raise PlanNotFoundError(f"Plan file not found: {plan_path}")
        try:
            data = yaml.safe_load(plan_path.read_text(encoding="utf-8"))
        except yaml.YAMLError as error:
            raise PlanFileError(f"Failed to parse plan file {plan_path}: {error}") from error
        if not isinstance(data, dict):
            raise PlanFileError(f"Plan file {plan_path} must contain a mapping at the top level.")
        try:
            plan = Plan.model_validate(data)
        except ValidationError as error:
            raise PlanFileError(f"Invalid plan file {plan_path}: {error}") from error
        plan.filename = plan_path.resolve()
        return plan

    def write_plan(self, path: Path | str, plan: Plan) -> None:
        plan_path = Path(path)
        atomic_write_text(plan_path, render_plan(plan))
        plan.filename = plan_path.resolve()

    def set_plan_status(self, path: Path | str, status: PlanStatus) -> Plan:
        """Persist a status change and refresh ``updatedAt``."""

        plan = self.read_plan(path)
        plan.status = status
        plan.touch()
        self.write_plan(path, plan)
        return plan

    def iter_plan_files(self, directory: Path | None = None) -> Iterator[Path]:
        root = Path(directory) if directory is not None else self.tasks_dir
        if not root.is_dir():
            return
        for candidate in sorted(root.rglob("*")):
            if candidate.is_file() and candidate.suffix in PLAN_SUFFIXES:
                yield candidate

    def list_plans(self, directory: Path | None = None) -> Dict[int, Plan]:
        """Return every plan with a numeric id, keyed by id.

        Files that fail to parse are logged and skipped; plans without a numeric
        id (legacy files) are ignored.
        """

        plans: Dict[int, Plan] = {}
        for path in self.iter_plan_files(directory):
            try:
                plan = self.read_plan(path)
            except PlanFileError as error:
                LOGGER.debug("Skipping unreadable plan file %s: %s", path, error)
                continue
            plan_id = plan.numeric_id
            if plan_id is None:
                continue
            if plan_id in plans:
                LOGGER.warning(
                    "Duplicate plan id %s in %s and %s; keeping the first",
                    plan_id,
                    plans[plan_id].filename,
                    path,
                )
                continue
            plans[plan_id] = plan
        return plans

    # ------------------------------------------------------------ resolution
    def find_plan(self, plan_id: int) -> Optional[Plan]:
        return self.list_plans().get(plan_id)

    def resolve_plan_file(self, plan_arg: str | Path) -> Path:
        """Resolve a file path or a numeric plan id to a plan file path."""

        text = str(plan_arg).strip()
        candidate = Path(text).expanduser()
        if candidate.exists():
            return candidate.resolve()
        if "/" in text or "\\" in text or "." in text:
            raise PlanNotFoundError(f"Plan file not found: {text}")
        try:
            plan_id = require_numeric_id(text)
        except InvalidPlanIdError as error:
            raise PlanNotFoundError(f"No plan found with ID or file path: {text}") from error
        plan = self.find_plan(plan_id)
        if plan is None or plan.filename is None:
            raise PlanNotFoundError(f"No plan found with ID or file path: {text}")
        return plan.filename


__all__ = [
    "DEFAULT_TASKS_DIR",
    "PLAN_SUFFIXES",
    "PlanStore",
    "SCHEMA_MARKER",
    "atomic_write_text",
    "render_plan",
    "require_numeric_id",
]
