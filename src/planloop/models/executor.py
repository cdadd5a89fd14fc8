"""Executor boundary: the opaque capability that performs the work for a prompt."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Literal, Optional

__all__ = [
    "ExecutionMode",
    "ExecutionOptions",
    "Executor",
    "ExecutorResult",
    "FailureDetails",
    "parse_failed_report",
]

ExecutionMode = Literal["normal", "simple", "review", "bare"]

_FAILED_LINE_RE = re.compile(r"^\s*FAILED:\s*(?P<summary>.*)$", re.MULTILINE)
_SOURCE_AGENT_RE = re.compile(r"^(?P<agent>[A-Za-z_-]+)\s+reported a failure", re.IGNORECASE)
_SECTION_RE = re.compile(
    r"^\s*(?:#+\s*)?(?P<heading>requirements|problems|possible solutions|solutions)\s*:?\s*$",
    re.IGNORECASE | re.MULTILINE,
)
_SECTION_KEYS = {
    "requirements": "requirements",
    "problems": "problems",
    "possible solutions": "solutions",
    "solutions": "solutions",
}


@dataclass(slots=True)
class FailureDetails:
    """Structured failure report returned by an executor."""

    requirements: str = ""
    problems: str = ""
    solutions: str = ""
    source_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ExecutorResult:
    """Outcome of one executor invocation."""

    content: str = ""
    success: bool = True
    failure_details: Optional[FailureDetails] = None

    @classmethod
    def coerce(cls, value: "ExecutorResult | str | None") -> "ExecutorResult":
        """Normalise plain-text (or empty) executor output into a result."""

        if isinstance(value, ExecutorResult):
            return value
        return cls(content=value or "", success=True)


@dataclass(slots=True)
class ExecutionOptions:
    """Context handed to the executor alongside the prompt."""

    plan_id: int
    plan_title: str
    plan_file_path: Path
    execution_mode: ExecutionMode = "normal"
    batch_mode: bool = False


class Executor(ABC):
    """Base class for executors.

    Implementations may rewrite the plan file while they work; callers must
    re-read it after :meth:`execute` returns.
    """

    name: str = "executor"

    @abstractmethod
    def execute(self, prompt: str, options: ExecutionOptions) -> ExecutorResult | str | None:
        """Perform the work described by ``prompt``."""


def parse_failed_report(output: str) -> Optional[FailureDetails]:
    """Extract a ``FAILED:`` report from free-form agent output.

    Returns ``None`` when the output contains no line starting with ``FAILED:``.
    The text after the marker becomes ``problems`` unless a ``Problems`` section
    is present; ``Requirements`` and ``Possible solutions`` sections are copied
    verbatim.
    """

    match = _FAILED_LINE_RE.search(output or "")
    if match is None:
        return None

    summary = match.group("summary").strip()
    source_agent = None
    agent_match = _SOURCE_AGENT_RE.match(summary)
    if agent_match:
        source_agent = agent_match.group("agent").lower()

    report = output[match.end():]
    sections: Dict[str, str] = {}
    headings = list(_SECTION_RE.finditer(report))
    for index, heading in enumerate(headings):
        end = headings[index + 1].start() if index + 1 < len(headings) else len(report)
        key = _SECTION_KEYS[heading.group("heading").lower()]
        body = report[heading.end():end].strip()
        if body:
            sections[key] = body

    return FailureDetails(
        requirements=sections.get("requirements", ""),
        problems=sections.get("problems", summary),
        solutions=sections.get("solutions", ""),
        source_agent=source_agent,
    )
