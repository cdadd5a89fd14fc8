"""Workspace tracking file: JSON metadata keyed by workspace path."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional

from ..memory.schema import Plan, utc_now
from ..memory.store import atomic_write_text

LOGGER = logging.getLogger(__name__)

_ISSUE_NUMBER_RE = re.compile(r"/(?:issues|pull)/(\d+)")


def read_tracking_data(tracking_file: Path) -> Dict[str, Dict[str, Any]]:
    if not tracking_file.exists():
        return {}
    data = json.loads(tracking_file.read_text(encoding="utf-8") or "{}")
    if not isinstance(data, dict):
        raise ValueError(f"Tracking file {tracking_file} must contain a JSON object")
    return data


def build_description(plan: Plan) -> str:
    """``#<issue> <title>`` when the plan links an issue, else the title."""

    title = plan.display_title
    issues = getattr(plan, "issue", None) or []
    if isinstance(issues, list) and issues:
        match = _ISSUE_NUMBER_RE.search(str(issues[0]))
        if match:
            return f"#{match.group(1)} {title}"
    return title


def patch_workspace_metadata(tracking_file: Path, workspace: Path, patch: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``patch`` into the entry for ``workspace``; empty values clear keys."""

    data = read_tracking_data(tracking_file)
    key = workspace.resolve().as_posix()
    entry = data.get(key) or {
        "workspacePath": key,
        "createdAt": utc_now().isoformat(),
    }
    for name, value in patch.items():
        if value in ("", [], None):
            entry.pop(name, None)
        else:
            entry[name] = value
    data[key] = entry
    atomic_write_text(tracking_file, json.dumps(data, indent=2) + "\n")
    return entry


def update_workspace_description(tracking_file: Optional[Path], workspace: Path, plan: Plan) -> bool:
    """Record the plan being worked on for a tracked workspace.

    Untracked workspaces are skipped. Failures are logged and never raised.
    Returns ``True`` when the tracking file was updated.
    """

    if tracking_file is None:
        return False
    try:
        data = read_tracking_data(tracking_file)
        if workspace.resolve().as_posix() not in data:
            return False
        issues = getattr(plan, "issue", None) or []
        patch_workspace_metadata(
            tracking_file,
            workspace,
            {
                "description": build_description(plan),
                "planId": str(plan.id) if plan.id is not None else "",
                "planTitle": plan.display_title,
                "issueUrls": list(issues) if isinstance(issues, list) else [],
            },
        )
    except (OSError, ValueError) as error:
        LOGGER.warning("Failed to update workspace description: %s", error)
        return False
    return True


__all__ = [
    "build_description",
    "patch_workspace_metadata",
    "read_tracking_data",
    "update_workspace_description",
]
