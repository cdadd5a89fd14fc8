"""Concrete executors: a prompt logger and a CLI agent driven over stdin."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Callable, Dict

from ..config import ExecutorsConfig
from ..errors import PlanLoopError
from .executor import (
    ExecutionOptions,
    Executor,
    ExecutorResult,
    FailureDetails,
    parse_failed_report,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_EXECUTOR = "copy-only"


class CopyOnlyExecutor(Executor):
    """Log the prompt and report success without doing any work.

    Useful for dry integration and for handing prompts to a human operator.
    """

    name = "copy-only"

    def __init__(self, echo: Callable[[str], None] | None = None) -> None:
        self._echo = echo

    def execute(self, prompt: str, options: ExecutionOptions) -> ExecutorResult:
        LOGGER.info("Prompt for plan %s (%s mode):\n%s", options.plan_id, options.execution_mode, prompt)
        if self._echo is not None:
            self._echo(prompt)
        return ExecutorResult(content=prompt, success=True)


class CommandExecutor(Executor):
    """Pipe the prompt to an external agent command and inspect its output.

    The command runs in ``cwd`` with the plan context exported through
    ``PLANLOOP_*`` environment variables. A non-zero exit or a ``FAILED:``
    report in the output marks the run unsuccessful.
    """

    name = "command"

    def __init__(
        self,
        command: Sequence[str] | str,
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if isinstance(command, str):
            command = shlex.split(command)
        self.command = list(command)
        if not self.command:
            raise PlanLoopError("The command executor requires a non-empty command.")
        self.cwd = cwd
        self.timeout = timeout
        self.env = dict(env or {})

    def execute(self, prompt: str, options: ExecutionOptions) -> ExecutorResult:
        executable = self.command[0]
        if shutil.which(executable) is None:
            raise PlanLoopError(f"Executable not available: {executable}")

        env = _child_env(self.env, options)
        LOGGER.debug("Running executor command %s", " ".join(self.command))
        try:
            process = subprocess.run(  # noqa: S603 - command comes from user config
                self.command,
                cwd=self.cwd,
                input=prompt.encode("utf-8"),
                capture_output=True,
                text=False,
                check=False,
                timeout=self.timeout,
                env=env,
            )
        except subprocess.TimeoutExpired as error:
            partial = _decode(error.stdout)
            details = parse_failed_report(partial) or FailureDetails(
                problems=f"Executor command timed out after {self.timeout}s",
                source_agent=self.name,
            )
            return ExecutorResult(content=partial, success=False, failure_details=details)

        output = _decode(process.stdout)
        stderr = _decode(process.stderr)
        details = parse_failed_report(output)
        success = process.returncode == 0 and details is None
        if process.returncode != 0 and stderr:
            LOGGER.warning("Executor command exited with %s: %s", process.returncode, stderr.strip())
        return ExecutorResult(content=output, success=success, failure_details=details)


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _child_env(extra: Mapping[str, str], options: ExecutionOptions) -> Dict[str, str]:
    env = os.environ.copy()
    env.update(extra)
    env["PLANLOOP_PLAN_ID"] = str(options.plan_id)
    env["PLANLOOP_PLAN_FILE"] = str(options.plan_file_path)
    env["PLANLOOP_EXECUTION_MODE"] = options.execution_mode
    env["PLANLOOP_BATCH_MODE"] = "1" if options.batch_mode else "0"
    return env


def build_executor(
    name: str | None,
    executors: ExecutorsConfig | None = None,
    *,
    cwd: Path | None = None,
) -> Executor:
    """Instantiate an executor by name from the validated ``executors`` section."""

    selected = (name or DEFAULT_EXECUTOR).strip()
    section = executors or ExecutorsConfig()
    if selected == CopyOnlyExecutor.name:
        return CopyOnlyExecutor()
    if selected == CommandExecutor.name:
        options = section.command
        command = options.command
        if not command:
            raise PlanLoopError("executors.command.command must be set to use the command executor.")
        return CommandExecutor(
            command,
            cwd=cwd,
            timeout=options.timeout,
            env=options.env or None,
        )
    raise PlanLoopError(f"Unknown executor: {selected}")


__all__ = ["CommandExecutor", "CopyOnlyExecutor", "DEFAULT_EXECUTOR", "build_executor"]
