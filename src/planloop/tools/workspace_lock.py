"""Cross-process mutual exclusion over a workspace directory.

A lock is a JSON record stored outside the workspace (so commits never pick it
up), one file per workspace path under ``lock_dir``. The record is written to a
private temp file and hard-linked into place, so the lock path never exists
without its content and two processes cannot both create it. Replacing a stale
record happens under an ``fcntl`` guard file so only one acquirer wins.
"""

from __future__ import annotations

import atexit
import errno
import fcntl
import hashlib
import json
import logging
import os
import signal
import socket
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Iterator, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..errors import LockHeldError
from ..memory.schema import utc_now

LOGGER = logging.getLogger(__name__)

DEFAULT_LOCK_DIR = Path(tempfile.gettempdir()) / "planloop" / "locks"
LOCK_VERSION = 1
DEFAULT_STALE_AFTER = timedelta(hours=24)
# An unreadable record younger than this is assumed to belong to a live writer.
UNREADABLE_GRACE = timedelta(seconds=10)


class LockRecord(BaseModel):
    """Persisted identity of the process holding a workspace."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    pid: int
    command: str = ""
    workspace: str = ""
    started_at: datetime = Field(alias="startedAt")
    hostname: str
    version: int = LOCK_VERSION
    type: Literal["pid"] = "pid"

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True), indent=2) + "\n"


def is_process_alive(pid: int) -> bool:
    """Return ``True`` if a process with ``pid`` exists on this host."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as error:
        return error.errno != errno.ESRCH
    return True


@dataclass(slots=True)
class LockHandle:
    """Returned by :meth:`WorkspaceLock.acquire`; releases on context exit."""

    lock: "WorkspaceLock"
    workspace: Path
    record: LockRecord

    def release(self) -> bool:
        return self.lock.release(self.workspace)

    def __enter__(self) -> "LockHandle":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


class WorkspaceLock:
    """Acquire, inspect and release workspace lock records."""

    _cleanup_handlers: ClassVar[Dict[Path, Callable[[], None]]] = {}
    _cleanup_guard: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        *,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        retries: int = 0,
        backoff_ms: int = 500,
        lock_dir: Path | str | None = None,
        pid: int | None = None,
        hostname: str | None = None,
        process_alive: Callable[[int], bool] = is_process_alive,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.stale_after = stale_after
        self.retries = retries
        self.backoff_ms = backoff_ms
        self.lock_dir = Path(lock_dir) if lock_dir is not None else DEFAULT_LOCK_DIR
        self.pid = pid if pid is not None else os.getpid()
        self.hostname = hostname or socket.gethostname()
        self._process_alive = process_alive
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Any, *, lock_dir: Path | str | None = None) -> "WorkspaceLock":
        """Build from a :class:`~planloop.config.LockConfig`."""

        return cls(
            lock_dir=lock_dir if lock_dir is not None else getattr(config, "directory", None),
            stale_after=timedelta(hours=config.stale_after_hours),
            retries=config.retries,
            backoff_ms=config.backoff_ms,
        )

    def lock_path(self, workspace: Path | str) -> Path:
        resolved = Path(workspace).resolve()
        digest = hashlib.sha1(resolved.as_posix().encode("utf-8")).hexdigest()[:16]
        return self.lock_dir / f"{resolved.name or 'root'}-{digest}.lock"

    # ------------------------------------------------------------------ public
    def acquire(self, workspace: Path | str, command: str = "") -> LockHandle:
        """Create the lock record or raise :class:`LockHeldError`.

        A stale record is replaced. A live one is retried ``retries`` times
        with linear backoff before giving up.
        """

        workspace_path = Path(workspace).resolve()
        attempt = 0
        while True:
            record = self._try_create(workspace_path, command)
            if record is not None:
                LOGGER.debug("Acquired workspace lock %s", self.lock_path(workspace_path))
                return LockHandle(lock=self, workspace=workspace_path, record=record)

            existing = self.read_record(workspace_path)
            writing = existing is None and self._recently_written(workspace_path)
            if not writing and (existing is None or self.is_stale(existing)):
                if self._replace_stale(workspace_path, existing):
                    continue
            if attempt >= self.retries:
                holder = existing.pid if existing else None
                started = existing.started_at.isoformat() if existing else "unknown"
                raise LockHeldError(
                    f"Workspace {workspace_path} is locked by pid {holder} "
                    f"({existing.command if existing else 'unknown command'}) since {started}",
                    holder_pid=holder,
                )
            attempt += 1
            delay = self.backoff_ms * attempt / 1000
            LOGGER.info("Workspace %s is locked; retrying in %.1fs", workspace_path, delay)
            self._sleep(delay)

    def release(self, workspace: Path | str, *, force: bool = False) -> bool:
        """Remove the lock if this process holds it (or ``force``).

        Returns ``True`` when a record was removed. A missing record is not an
        error.
        """

        workspace_path = Path(workspace).resolve()
        path = self.lock_path(workspace_path)
        existing = self.read_record(workspace_path)
        if existing is not None and existing.pid != self.pid and not force:
            LOGGER.debug("Not releasing lock %s held by pid %s", path, existing.pid)
            return False
        try:
            path.unlink()
            removed = True
        except FileNotFoundError:
            removed = False
        self._unregister_cleanup(workspace_path)
        return removed

    def is_stale(self, record: LockRecord) -> bool:
        started = record.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        if utc_now() - started > self.stale_after:
            return True
        if record.hostname == self.hostname and not self._process_alive(record.pid):
            return True
        return False

    def read_record(self, workspace: Path | str) -> Optional[LockRecord]:
        """Return the current record or ``None``; unreadable records count as absent."""

        path = self.lock_path(workspace)
        try:
            raw = path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        try:
            return LockRecord.model_validate_json(raw)
        except ValidationError as error:
            LOGGER.warning("Ignoring malformed lock file %s: %s", path, error)
            return None

    def get_lock_info(self, workspace: Path | str) -> Optional[LockRecord]:
        """Return the live lock record, clearing a stale one first."""

        if self.clear_stale_lock(workspace):
            return None
        record = self.read_record(workspace)
        if record is not None and self.is_stale(record):
            return None
        return record

    def is_locked(self, workspace: Path | str) -> bool:
        return self.get_lock_info(workspace) is not None

    def clear_stale_lock(self, workspace: Path | str) -> bool:
        """Delete the lock file if its record is stale, or unreadable and older than the grace period."""

        workspace_path = Path(workspace).resolve()
        if not self.lock_path(workspace_path).exists():
            return False
        record = self.read_record(workspace_path)
        if record is not None and not self.is_stale(record):
            return False
        if record is None and self._recently_written(workspace_path):
            return False
        return self._replace_stale(workspace_path, record)

    def setup_cleanup_handlers(self, workspace: Path | str) -> None:
        """Release the lock at interpreter exit and on SIGTERM/SIGHUP.

        Signal handlers are only installed from the main thread and only where
        no custom handler is present. A hard kill is recovered through
        :meth:`is_stale`.
        """

        workspace_path = Path(workspace).resolve()
        with self._cleanup_guard:
            if workspace_path in self._cleanup_handlers:
                return

            def cleanup() -> None:
                record = self.read_record(workspace_path)
                if record is not None and record.pid == self.pid:
                    try:
                        self.lock_path(workspace_path).unlink()
                    except FileNotFoundError:
                        pass

            self._cleanup_handlers[workspace_path] = cleanup
        atexit.register(cleanup)

        if threading.current_thread() is not threading.main_thread():
            return
        for signum in (signal.SIGTERM, getattr(signal, "SIGHUP", None)):
            if signum is None or signal.getsignal(signum) is not signal.SIG_DFL:
                continue
            signal.signal(signum, _exit_on_signal)

    @contextmanager
    def held(self, workspace: Path | str, command: str = "") -> Iterator[LockHandle]:
        """Hold the lock for the duration of the block, releasing on every exit path."""

        handle = self.acquire(workspace, command)
        self.setup_cleanup_handlers(handle.workspace)
        try:
            yield handle
        finally:
            handle.release()

    # ----------------------------------------------------------------- helpers
    def _new_record(self, workspace: Path, command: str) -> LockRecord:
        return LockRecord(
            pid=self.pid,
            command=command,
            workspace=workspace.as_posix(),
            started_at=utc_now(),
            hostname=self.hostname,
        )

    def _try_create(self, workspace: Path, command: str) -> Optional[LockRecord]:
        path = self.lock_path(workspace)
        path.parent.mkdir(parents=True, exist_ok=True)
        record = self._new_record(workspace, command)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(record.to_json())
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o644)
            try:
                os.link(tmp_path, path)
            except FileExistsError:
                return None
        finally:
            tmp_path.unlink(missing_ok=True)
        return record

    def _recently_written(self, workspace: Path) -> bool:
        try:
            mtime = self.lock_path(workspace).stat().st_mtime
        except FileNotFoundError:
            return False
        age = utc_now() - datetime.fromtimestamp(mtime, tz=timezone.utc)
        return age < UNREADABLE_GRACE

    def _replace_stale(self, workspace: Path, seen: Optional[LockRecord]) -> bool:
        """Remove a stale record unless another process replaced it meanwhile."""

        path = self.lock_path(workspace)
        guard = path.with_name(path.name + ".guard")
        with guard.open("a+", encoding="utf-8") as guard_handle:
            fcntl.flock(guard_handle.fileno(), fcntl.LOCK_EX)
            try:
                current = self.read_record(workspace)
                if current is not None and (seen is None or current != seen):
                    if not self.is_stale(current):
                        return False
                if current is not None:
                    LOGGER.warning(
                        "Removing stale workspace lock held by pid %s on %s (started %s)",
                        current.pid,
                        current.hostname,
                        current.started_at.isoformat(),
                    )
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
                return True
            finally:
                fcntl.flock(guard_handle.fileno(), fcntl.LOCK_UN)

    def _unregister_cleanup(self, workspace: Path) -> None:
        with self._cleanup_guard:
            cleanup = self._cleanup_handlers.pop(workspace, None)
        if cleanup is not None:
            atexit.unregister(cleanup)


def _exit_on_signal(signum: int, _frame: object) -> None:
    # SystemExit unwinds ``finally`` blocks and runs atexit cleanups.
    raise SystemExit(128 + signum)


__all__ = [
    "DEFAULT_STALE_AFTER",
    "DEFAULT_LOCK_DIR",
    "UNREADABLE_GRACE",
    "LockHandle",
    "LockRecord",
    "WorkspaceLock",
    "is_process_alive",
]
