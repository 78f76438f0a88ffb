"""
State lock — advisory, cross-process lock on the state file.

Exactly one run may hold the write lock on a state store at a time.
The lock is a sidecar file created with O_EXCL that records who holds
it; a second run is rejected, never merged.

A lock is considered stale (and overridden with a warning) when:
    - its holder pid is no longer alive on this host, or
    - it is older than ``stale_after`` seconds.

Every removal of the lock file (stale override, release, force-unlock)
happens under an flock on a ``.guard`` sidecar, after re-reading the
holder.  Creation stays a plain O_EXCL open, so a removal can only ever
hit the record it just read.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import socket
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from converge.core.errors import StateLockError

logger = logging.getLogger(__name__)


class StateLock:
    """Advisory lock file next to the state file.

    Usage::

        with StateLock(state_path.with_suffix(".lock"), run_id="run-1"):
            ...  # exclusive access to the state store
    """

    def __init__(self, path: Path, run_id: str = "", stale_after: float = 3600.0):
        self._path = path
        self._run_id = run_id
        self._stale_after = stale_after
        self._owned: dict[str, Any] | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._owned is not None

    def holder(self) -> dict[str, Any] | None:
        """Read the current lock holder, or None when unlocked."""
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            # Half-written by a crashed holder — treat as stale
            return {"pid": None, "host": None, "created_at": 0.0, "run_id": "", "unreadable": True}
        return data if isinstance(data, dict) else {"unreadable": True, "created_at": 0.0}

    def is_stale(self, info: dict[str, Any]) -> bool:
        """Whether a lock record can be safely overridden."""
        if info.get("unreadable"):
            return True
        age = time.time() - float(info.get("created_at") or 0.0)
        if age > self._stale_after:
            return True
        if info.get("host") == socket.gethostname():
            pid = info.get("pid")
            if isinstance(pid, int) and not _pid_alive(pid):
                return True
        return False

    def acquire(self) -> None:
        """Take the lock or raise StateLockError."""
        if self.held:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)

        if not self._create():
            info = self.holder()
            if info is not None and not self.is_stale(info):
                raise _locked(info)
            self._take_over()
        logger.debug("Acquired state lock %s", self._path)

    def release(self) -> None:
        """Drop the lock, unless another run has taken it over since."""
        if self._owned is None:
            return
        owned, self._owned = self._owned, None
        with self._guard():
            if self.holder() != owned:
                logger.warning("State lock %s is no longer ours; leaving it in place", self._path)
                return
            self._path.unlink(missing_ok=True)
        logger.debug("Released state lock %s", self._path)

    def force_unlock(self) -> dict[str, Any] | None:
        """Remove the lock regardless of holder. Returns the removed record."""
        self._owned = None
        if self.holder() is None:
            return None
        with self._guard():
            info = self.holder()
            self._path.unlink(missing_ok=True)
        if info is not None:
            logger.warning("Force-unlocked state lock held by pid %s", info.get("pid"))
        return info

    # ── Internals ────────────────────────────────────────────────

    def _create(self) -> bool:
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        record = self._record()
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(record, f)
        self._owned = record
        return True

    def _take_over(self) -> None:
        with self._guard():
            # Re-read: another run may have overridden the same stale lock
            info = self.holder()
            if info is not None:
                if not self.is_stale(info):
                    raise _locked(info)
                logger.warning(
                    "Overriding stale state lock held by pid %s on %s",
                    info.get("pid"),
                    info.get("host"),
                )
                self._path.unlink(missing_ok=True)
            if not self._create():
                raise _locked(self.holder() or {})

    @contextmanager
    def _guard(self) -> Iterator[None]:
        guard = self._path.with_name(self._path.name + ".guard")
        with open(guard, "a", encoding="utf-8") as f:
            fcntl.flock(f, fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(f, fcntl.LOCK_UN)

    def _record(self) -> dict[str, Any]:
        return {
            "pid": os.getpid(),
            "host": socket.gethostname(),
            "run_id": self._run_id,
            "created_at": time.time(),
        }

    def __enter__(self) -> StateLock:
        self.acquire()
        return self

    def __exit__(self, *args: Any) -> None:
        self.release()


def _locked(info: dict[str, Any]) -> StateLockError:
    return StateLockError(
        f"State is locked by pid {info.get('pid')} on {info.get('host')} "
        f"(run {info.get('run_id') or '?'}). "
        "If no other run is active, use 'converge force-unlock'.",
        holder=info,
    )


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True
