"""Commit plan progress to the git repository that holds the workspace.

Only three things are needed from git during a run: finding the repository,
listing the files an iteration touched (for ``changedFiles`` and the run
summary), and recording a commit after a unit or plan completes.
"""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Sequence

NOTHING_TO_COMMIT = "nothing to commit"


class GitError(RuntimeError):
    """A git invocation exited non-zero or no repository could be found."""


def _git(root: Path, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
    raw = subprocess.run(["git", *args], cwd=root, capture_output=True, check=False)
    return subprocess.CompletedProcess(
        raw.args,
        raw.returncode,
        (raw.stdout or b"").decode("utf-8", errors="replace"),
        (raw.stderr or b"").decode("utf-8", errors="replace"),
    )


def _output(process: subprocess.CompletedProcess[str]) -> str:
    return process.stderr.strip() or process.stdout.strip()


class GitRepository:
    """The working tree plan progress is committed to."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"{self.root} has no .git directory; commits need a git checkout")

    @classmethod
    def discover(cls, start: Path | str | None = None) -> "GitRepository":
        """Walk up from ``start`` (default: cwd) to the first directory containing ``.git``."""

        origin = Path(start or Path.cwd()).resolve()
        for directory in (origin, *origin.parents):
            if (directory / ".git").exists():
                return cls(directory)
        raise GitError(f"No git checkout contains {origin}; progress will not be committed")

    def run(self, *args: str) -> str:
        """Run git in the repository root and return stdout, raising on failure."""

        process = _git(self.root, args)
        if process.returncode != 0:
            command = " ".join(args)
            raise GitError(f"'git {command}' exited {process.returncode}: {_output(process) or 'no output'}")
        return process.stdout

    def working_tree_changes(self) -> List[Path]:
        """Paths an agent has touched since the last commit, untracked files included."""

        changed = set()
        for entry in self.run("status", "--porcelain").splitlines():
            if len(entry) < 4:
                continue
            code, target = entry[:2], entry[3:]
            # Renames and copies list "old -> new"; the new path is what changed.
            if code[0] in "RC" and " -> " in target:
                target = target.rsplit(" -> ", 1)[1]
            changed.add(Path(target.strip().strip('"')))
        return sorted(changed, key=Path.as_posix)

    def commit_all(self, message: str) -> str | None:
        """Stage the whole tree and commit it as ``message``.

        Returns the new HEAD sha, or ``None`` when the tree was already clean.
        """

        self.run("add", "--all")
        process = _git(self.root, ["commit", "--message", message])
        if process.returncode != 0:
            details = _output(process)
            if NOTHING_TO_COMMIT in (process.stdout + process.stderr).lower():
                return None
            raise GitError(f"Could not commit plan progress ({message!r}): {details or 'no output'}")
        return self.run("rev-parse", "HEAD").strip()


__all__ = ["GitError", "GitRepository"]
