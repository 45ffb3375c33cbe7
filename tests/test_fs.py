from __future__ import annotations

import os
import stat
from datetime import datetime, timezone
from pathlib import Path

import pytest

from company_sync.fs import atomic_write_bytes, atomic_write_text, is_within, timestamp_id, unique_child, utcnow_iso


def test_timestamp_id_is_filesystem_safe():
    now = datetime(2026, 10, 19, 8, 15, 2, 123456, tzinfo=timezone.utc)
    assert timestamp_id(now) == "2026-10-19T08-15-02"
    assert ":" not in timestamp_id()


def test_utcnow_iso_has_z_suffix():
    assert utcnow_iso().endswith("Z")


def test_unique_child_adds_suffix(tmp_path: Path):
    assert unique_child(tmp_path, "x") == tmp_path / "x"
    (tmp_path / "x").mkdir()
    (tmp_path / "x-1").mkdir()
    assert unique_child(tmp_path, "x") == tmp_path / "x-2"


def test_atomic_write_creates_parents_and_replaces(tmp_path: Path):
    target = tmp_path / "a" / "b" / "file.txt"
    atomic_write_text(target, "one")
    atomic_write_text(target, "two")
    assert target.read_text() == "two"
    assert [p.name for p in target.parent.iterdir()] == ["file.txt"]


@pytest.mark.skipif(os.name != "posix", reason="POSIX-only test")
def test_atomic_write_keeps_existing_mode(tmp_path: Path):
    target = tmp_path / "script.sh"
    target.write_text("old")
    target.chmod(0o755)
    atomic_write_bytes(target, b"new")
    assert stat.S_IMODE(target.stat().st_mode) == 0o755


def test_atomic_write_leaves_original_on_failure(tmp_path: Path, monkeypatch):
    target = tmp_path / "file.txt"
    target.write_text("original")

    def boom(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(os, "replace", boom)
    with pytest.raises(OSError):
        atomic_write_text(target, "partial")

    assert target.read_text() == "original"
    assert [p.name for p in tmp_path.iterdir()] == ["file.txt"]


def test_is_within(tmp_path: Path):
    assert is_within(tmp_path / "a", tmp_path)
    assert not is_within(tmp_path, tmp_path)
    assert not is_within(tmp_path.parent, tmp_path)
