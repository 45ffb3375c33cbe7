"""Serialization of syncs per workspace.

Two layers, both non-blocking:

* :class:`WorkspaceLockRegistry` - in-process mutexes keyed by the resolved
  workspace path, owned by the process root.
* :class:`SyncLockFile` - a lock file in the repository's git dir, so a
  second process (another window, the CLI) cannot sync the same working
  tree at the same time.
"""

from __future__ import annotations

import getpass
import json
import os
import socket
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional

from .fs import utcnow_iso
from .observability import log_warning

LOCK_FILENAME = "company-sync.lock"


class WorkspaceBusyError(Exception):
    """Another sync already holds the workspace."""


def _pid_alive(pid: int) -> bool:
    if os.name != "posix":
        # No cheap liveness check; rely on the TTL
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class SyncLockFile:
    """Exclusive lock file holding a JSON owner record.

    An existing lock is taken over when it is older than ``ttl`` seconds
    (``ttl <= 0`` disables expiry) or when its owner process on this host is
    gone.
    """

    def __init__(self, path: Path, *, ttl: int = 3600):
        self.path = Path(path)
        self.ttl = ttl
        self.held = False

    def owner(self) -> Optional[dict]:
        """The recorded owner, or None when unlocked or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (FileNotFoundError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def _expired(self) -> bool:
        try:
            age = time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return False
        if self.ttl > 0 and age > self.ttl:
            return True
        owner = self.owner() or {}
        pid = owner.get("pid")
        return owner.get("host") == socket.gethostname() and isinstance(pid, int) and not _pid_alive(pid)

    def _record(self) -> str:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        return json.dumps(
            {"pid": os.getpid(), "host": socket.gethostname(), "user": user, "started": utcnow_iso()}
        )

    def acquire(self) -> bool:
        """Take the lock if free (or expired); never waits."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if not self._expired():
                    return False
                log_warning("Taking over expired sync lock", lock=str(self.path), owner=self.owner())
                try:
                    self.path.unlink()
                except FileNotFoundError:
                    pass
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(self._record())
            self.held = True
            return True
        return False

    def release(self) -> None:
        if not self.held:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self.held = False

    def __enter__(self) -> "SyncLockFile":
        if not self.acquire():
            owner = self.owner() or {}
            raise WorkspaceBusyError(
                f"Sync already in progress (pid={owner.get('pid', '?')} since {owner.get('started', '?')})"
            )
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class WorkspaceLockRegistry:
    """In-process mutexes keyed by resolved workspace path.

    Owned by the process root. ``hold`` never waits: a second request for a
    path that is already held fails immediately with WorkspaceBusyError.
    Different paths are independent.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Path, threading.Lock] = {}
        self._closed = False

    @staticmethod
    def _key(path: Path) -> Path:
        return Path(path).expanduser().resolve()

    def register(self, path: Path) -> threading.Lock:
        key = self._key(path)
        with self._guard:
            if self._closed:
                raise RuntimeError("WorkspaceLockRegistry has been shut down")
            return self._locks.setdefault(key, threading.Lock())

    def unregister(self, path: Path) -> None:
        """Forget an idle workspace; a held lock stays registered."""
        key = self._key(path)
        with self._guard:
            lock = self._locks.get(key)
            if lock is not None and not lock.locked():
                del self._locks[key]

    def is_held(self, path: Path) -> bool:
        with self._guard:
            lock = self._locks.get(self._key(path))
        return bool(lock and lock.locked())

    @contextmanager
    def hold(self, path: Path) -> Iterator[None]:
        lock = self.register(path)
        if not lock.acquire(blocking=False):
            raise WorkspaceBusyError(f"Sync already in progress for {path}")
        try:
            yield
        finally:
            lock.release()

    def shutdown(self) -> None:
        with self._guard:
            self._closed = True
            self._locks.clear()


@contextmanager
def workspace_file_lock(git_dir: Path, *, ttl: int) -> Iterator[SyncLockFile]:
    """Hold the cross-process lock stored in ``git_dir``."""
    with SyncLockFile(Path(git_dir) / LOCK_FILENAME, ttl=ttl) as lock:
        yield lock
