from __future__ import annotations

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def timestamp_id(now: datetime | None = None) -> str:
    """Filesystem-safe UTC timestamp, e.g. ``2026-10-19T08-15-02``."""
    now = now or datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H-%M-%S")


def unique_child(parent: Path, name: str) -> Path:
    """Return ``parent/name``, suffixed ``-1``, ``-2``... if it already exists."""
    dest = parent / name
    i = 1
    while dest.exists():
        dest = parent / f"{name}-{i}"
        i += 1
    return dest


def _target_mode(path: Path) -> int:
    try:
        return path.stat().st_mode & 0o777
    except FileNotFoundError:
        return 0o644


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Replace ``path`` with ``data`` in one step.

    The content goes to a temp file in the same directory which is then
    renamed over the target, so a failed write leaves the old file intact.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        os.chmod(tmp_name, _target_mode(path))
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def atomic_write_text(path: Path, text: str) -> None:
    atomic_write_bytes(path, text.encode("utf-8"))


def is_within(path: Path, root: Path) -> bool:
    """True if resolved ``path`` lies strictly inside resolved ``root``."""
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return path != root
