from __future__ import annotations

import sys
import textwrap

from planloop.config import PlanLoopConfig
from planloop.models import CommandExecutor, ExecutionOptions, build_executor, parse_failed_report


def test_parse_failed_report_extracts_sections() -> None:
    output = textwrap.dedent(
        """
        Working on the task...
        FAILED: Implementer reported a failure: conflicting requirements
        Requirements:
        - Keep the v1 endpoint
        - Remove all v1 code
        Problems:
        The two requirements contradict each other.
        Possible solutions:
        Drop one of the requirements.
        """
    )

    details = parse_failed_report(output)

    assert details is not None
    assert details.source_agent == "implementer"
    assert details.requirements == "- Keep the v1 endpoint\n- Remove all v1 code"
    assert details.problems == "The two requirements contradict each other."
    assert details.solutions == "Drop one of the requirements."


def test_parse_failed_report_falls_back_to_summary() -> None:
    details = parse_failed_report("FAILED: cannot reach the database\n")

    assert details is not None
    assert details.problems == "cannot reach the database"
    assert details.source_agent is None
    assert details.requirements == ""


def test_output_without_marker_is_not_a_failure() -> None:
    assert parse_failed_report("All tasks completed. No FAILED: markers mid-line.") is None
    assert parse_failed_report("") is None


def _options(tmp_path) -> ExecutionOptions:
    return ExecutionOptions(plan_id=9, plan_title="Demo", plan_file_path=tmp_path / "9.plan.yml")


def test_command_executor_pipes_prompt_and_exports_plan_context(tmp_path) -> None:
    script = "import os, sys; print(sys.stdin.read().upper()); print(os.environ['PLANLOOP_PLAN_ID'])"
    executor = CommandExecutor([sys.executable, "-c", script], cwd=tmp_path)

    result = executor.execute("do the work", _options(tmp_path))

    assert result.success
    assert result.content.splitlines() == ["DO THE WORK", "9"]


def test_command_executor_detects_failed_report_and_exit_code(tmp_path) -> None:
    reporting = CommandExecutor(
        [sys.executable, "-c", "print('FAILED: tester reported a failure')"],
        cwd=tmp_path,
    )
    crashing = CommandExecutor([sys.executable, "-c", "raise SystemExit(2)"], cwd=tmp_path)

    reported = reporting.execute("prompt", _options(tmp_path))
    crashed = crashing.execute("prompt", _options(tmp_path))

    assert not reported.success
    assert reported.failure_details.source_agent == "tester"
    assert not crashed.success
    assert crashed.failure_details is None


def test_build_executor_reads_command_section(tmp_path) -> None:
    config = PlanLoopConfig.from_mapping(
        {"executors": {"command": {"command": f"{sys.executable} -c pass", "timeout": 5}}}
    )

    executor = build_executor("command", config.executors, cwd=tmp_path)

    assert isinstance(executor, CommandExecutor)
    assert executor.command == [sys.executable, "-c", "pass"]
    assert executor.timeout == 5
    assert build_executor(None).name == "copy-only"


def test_command_executor_replaces_undecodable_output(tmp_path) -> None:
    script = "import sys; sys.stdout.buffer.write(b'\\xff\\xfe done\\n')"
    executor = CommandExecutor([sys.executable, "-c", script], cwd=tmp_path)

    result = executor.execute("prompt", _options(tmp_path))

    assert result.success
    assert result.content == "\ufffd\ufffd done\n"
