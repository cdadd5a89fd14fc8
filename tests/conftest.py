from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from planloop.memory.store import PlanStore  # noqa: E402


@dataclass(slots=True)
class PlanWorkspace:
    """Fixture payload: a workspace with a tasks directory of plan files."""

    root: Path
    tasks_dir: Path
    store: PlanStore

    def add(self, plan_id: int | str | None, **fields: Any) -> Path:
        """Write a plan file and return its path."""

        name = fields.pop("filename", None) or f"{plan_id}.plan.yml"
        document: dict[str, Any] = {}
        if plan_id is not None:
            document["id"] = plan_id
        document["title"] = fields.pop("title", f"Plan {plan_id}")
        document["goal"] = fields.pop("goal", f"Goal for plan {plan_id}")
        document.update(fields)
        document.setdefault("tasks", [])
        path = self.tasks_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(document, sort_keys=False), encoding="utf-8")
        return path

    def load(self, path: Path) -> dict[str, Any]:
        return yaml.safe_load(path.read_text(encoding="utf-8"))


def run_git(root: Path, *cmd: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *cmd],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )


@pytest.fixture()
def workspace(tmp_path: Path) -> PlanWorkspace:
    root = tmp_path / "workspace"
    tasks_dir = root / "tasks"
    tasks_dir.mkdir(parents=True)
    return PlanWorkspace(root=root, tasks_dir=tasks_dir, store=PlanStore(tasks_dir))


@pytest.fixture()
def git_workspace(workspace: PlanWorkspace) -> PlanWorkspace:
    """Workspace initialised as a git repository with one commit."""

    run_git(workspace.root, "init")
    run_git(workspace.root, "config", "user.email", "agent@example.com")
    run_git(workspace.root, "config", "user.name", "Plan Runner")
    (workspace.root / "README.md").write_text("Fixture workspace.\n", encoding="utf-8")
    run_git(workspace.root, "add", ".")
    run_git(workspace.root, "commit", "-m", "Initial workspace state")
    return workspace
