from __future__ import annotations

import json

from planloop.memory.schema import Plan
from planloop.tools.workspace_tracker import (
    build_description,
    patch_workspace_metadata,
    update_workspace_description,
)


def test_build_description_prefers_issue_number() -> None:
    plan = Plan(id=1, title="Add login", goal="g", issue=["https://github.com/acme/app/issues/77"])

    assert build_description(plan) == "#77 Add login"
    assert build_description(Plan(id=2, goal="Fallback goal")) == "Fallback goal"


def test_update_skips_untracked_workspaces(tmp_path) -> None:
    tracking_file = tmp_path / "workspaces.json"
    workspace = tmp_path / "ws"
    workspace.mkdir()

    assert not update_workspace_description(tracking_file, workspace, Plan(id=1, goal="g"))
    assert not tracking_file.exists()
    assert not update_workspace_description(None, workspace, Plan(id=1, goal="g"))


def test_update_patches_tracked_workspace(tmp_path) -> None:
    tracking_file = tmp_path / "workspaces.json"
    workspace = tmp_path / "ws"
    workspace.mkdir()
    key = workspace.resolve().as_posix()
    tracking_file.write_text(
        json.dumps({key: {"workspacePath": key, "issueUrls": ["old"], "branch": "feature"}}),
        encoding="utf-8",
    )
    plan = Plan(id=5, title="Refactor", goal="g")

    assert update_workspace_description(tracking_file, workspace, plan)

    entry = json.loads(tracking_file.read_text(encoding="utf-8"))[key]
    assert entry["description"] == "Refactor"
    assert entry["planId"] == "5"
    assert entry["planTitle"] == "Refactor"
    assert entry["branch"] == "feature"
    assert "issueUrls" not in entry


def test_patch_clears_empty_values(tmp_path) -> None:
    tracking_file = tmp_path / "workspaces.json"
    workspace = tmp_path / "ws"

    patch_workspace_metadata(tracking_file, workspace, {"description": "first", "planId": "3"})
    entry = patch_workspace_metadata(tracking_file, workspace, {"description": "", "planId": "4"})

    assert "description" not in entry
    assert entry["planId"] == "4"
    assert entry["workspacePath"] == workspace.resolve().as_posix()


def test_corrupt_tracking_file_is_logged_not_raised(tmp_path, caplog) -> None:
    tracking_file = tmp_path / "workspaces.json"
    tracking_file.write_text("[1, 2", encoding="utf-8")

    assert not update_workspace_description(tracking_file, tmp_path, Plan(id=1, goal="g"))
    assert "Failed to update workspace description" in caplog.text
