"""Run the configured post-apply commands inside the workspace."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Literal, Sequence

from ..config import PostApplyCommand
from ..errors import PostApplyCommandError

LOGGER = logging.getLogger(__name__)

CommandStatus = Literal["passed", "failed", "allowed-failure"]


@dataclass(slots=True)
class CommandResult:
    """Result of one post-apply command."""

    title: str
    command: str
    status: CommandStatus
    exit_code: int | None
    stdout: str
    stderr: str

    @property
    def failed(self) -> bool:
        return self.status == "failed"


def run_post_apply_command(entry: PostApplyCommand, workspace: Path) -> CommandResult:
    cwd = workspace
    if entry.working_directory:
        candidate = Path(entry.working_directory)
        cwd = candidate if candidate.is_absolute() else workspace / candidate
    env = os.environ.copy()
    env.update(entry.env)

    LOGGER.info("Running post-apply command: %s", entry.title)
    process = subprocess.run(  # noqa: S602 - command sourced from user config
        entry.command,
        shell=True,
        cwd=cwd,
        env=env,
        capture_output=True,
        text=True,
        check=False,
    )
    if process.returncode == 0:
        status: CommandStatus = "passed"
    elif entry.allow_failure:
        status = "allowed-failure"
    else:
        status = "failed"

    if status != "passed" or not entry.hide_output_on_success:
        for stream in (process.stdout, process.stderr):
            if stream and stream.strip():
                LOGGER.info("%s", stream.rstrip())
    if status == "allowed-failure":
        LOGGER.warning(
            "Command '%s' failed with exit code %s, but failure is allowed",
            entry.title,
            process.returncode,
        )
    return CommandResult(
        title=entry.title,
        command=entry.command,
        status=status,
        exit_code=process.returncode,
        stdout=process.stdout,
        stderr=process.stderr,
    )


def run_post_apply_commands(entries: Sequence[PostApplyCommand], workspace: Path) -> List[CommandResult]:
    """Run ``entries`` in order; the first required failure raises."""

    results: List[CommandResult] = []
    for entry in entries:
        result = run_post_apply_command(entry, workspace)
        results.append(result)
        if result.failed:
            raise PostApplyCommandError(
                f'Required command "{entry.title}" failed with exit code {result.exit_code}',
                title=entry.title,
                exit_code=result.exit_code,
            )
    return results


__all__ = ["CommandResult", "run_post_apply_command", "run_post_apply_commands"]
