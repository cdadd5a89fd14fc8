"""Configuration model and defaults for ``planloop.yaml``."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import PlanLoopError

DEFAULT_CONFIG_NAME = "planloop.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "paths": {
        "tasks": "tasks",
        "tracking_file": None,
    },
    "execution": {
        "mode": "batch",
        "executor": "copy-only",
        "commit": True,
        "max_steps": None,
    },
    "executors": {
        "command": {
            "command": None,
            "timeout": None,
        },
    },
    "post_apply_commands": [],
    "lock": {
        "stale_after_hours": 24,
        "retries": 0,
        "backoff_ms": 500,
        "directory": None,
    },
}


class ConfigSection(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PathsConfig(ConfigSection):
    tasks: str = "tasks"
    tracking_file: Optional[str] = None


class ExecutionConfig(ConfigSection):
    mode: Literal["batch", "serial"] = "batch"
    executor: str = "copy-only"
    commit: bool = True
    max_steps: Optional[int] = Field(default=None, ge=1)


class CommandExecutorConfig(ConfigSection):
    command: Optional[str | List[str]] = None
    timeout: Optional[float] = Field(default=None, gt=0)
    env: Dict[str, str] = Field(default_factory=dict)


class ExecutorsConfig(ConfigSection):
    command: CommandExecutorConfig = Field(default_factory=CommandExecutorConfig)


class PostApplyCommand(ConfigSection):
    """Shell command run in the workspace after each successful executor unit."""

    title: str
    command: str
    working_directory: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    allow_failure: bool = False
    hide_output_on_success: bool = False

    @field_validator("command")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command must not be empty")
        return value


class LockConfig(ConfigSection):
    stale_after_hours: float = Field(default=24, gt=0)
    retries: int = Field(default=0, ge=0)
    backoff_ms: int = Field(default=500, ge=0)
    directory: Optional[str] = None


class PlanLoopConfig(ConfigSection):
    """Validated view of the configuration mapping."""

    paths: PathsConfig = Field(default_factory=PathsConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    executors: ExecutorsConfig = Field(default_factory=ExecutorsConfig)
    post_apply_commands: List[PostApplyCommand] = Field(default_factory=list)
    lock: LockConfig = Field(default_factory=LockConfig)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "PlanLoopConfig":
        try:
            return cls.model_validate(dict(data or {}))
        except ValidationError as error:
            raise PlanLoopError(f"Invalid configuration: {error}") from error

    def tasks_dir(self, base_dir: Path) -> Path:
        path = Path(self.paths.tasks)
        return path if path.is_absolute() else (base_dir / path)

    def tracking_file(self, base_dir: Path) -> Path | None:
        if not self.paths.tracking_file:
            return None
        path = Path(self.paths.tracking_file).expanduser()
        return path if path.is_absolute() else (base_dir / path)


def copy_config_template() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "LockConfig",
    "PlanLoopConfig",
    "PostApplyCommand",
    "copy_config_template",
]
