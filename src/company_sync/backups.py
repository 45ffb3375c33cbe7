"""Conflict backups.

When a sync resolves conflicts by taking the server's version, the local
version of each conflicting file is first copied, as committed before the
rebase, into ``.backups/<timestamp>/`` under its original relative path, next
to a ``_metadata.json`` record. Backups are never modified or deleted by sync;
users can list them and restore single files.
"""

from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from .fs import atomic_write_bytes, atomic_write_text, is_within, timestamp_id, unique_child, utcnow_iso
from .gateway import LocalRepositoryError, RepositoryHandle
from .observability import log_debug, log_info, log_warning

BACKUP_DIR_NAME = ".backups"
METADATA_FILENAME = "_metadata.json"
CONFLICT_REASON = "conflict"


class BackupError(Exception):
    """Base exception for backup operations."""


class InvalidBackupPathError(BackupError):
    """A backup id or file path resolves outside its allowed root."""


class BackupNotFoundError(BackupError):
    """The requested backup or file does not exist."""


class BackupMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    timestamp: str
    reason: str = CONFLICT_REASON
    conflict_files: List[str] = Field(default_factory=list, alias="conflictFiles")
    commit_message: str = Field(
        default="",
        alias="commitMessage",
        validation_alias=AliasChoices("commitMessage", "message"),
    )


@dataclass
class ConflictBackup:
    id: str
    path: Path
    timestamp: str
    reason: str
    conflict_files: List[str] = field(default_factory=list)
    commit_message: str = ""
    files: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": str(self.path),
            "timestamp": self.timestamp,
            "reason": self.reason,
            "conflictFiles": list(self.conflict_files),
            "commitMessage": self.commit_message,
            "files": list(self.files),
        }


def _safe_relative(path: str) -> Optional[PurePosixPath]:
    pure = PurePosixPath(path.replace("\\", "/"))
    if not path or pure.is_absolute() or ".." in pure.parts:
        return None
    return pure


class ConflictBackupStore:
    """Backups live in ``<workspace>/<backup_dir>/<id>/``."""

    def __init__(self, workspace: Path, *, backup_dir: str = BACKUP_DIR_NAME):
        self.workspace = Path(workspace)
        self.root = self.workspace / backup_dir

    def snapshot(
        self,
        handle: RepositoryHandle,
        local_head_ref: Optional[str],
        conflict_files: Iterable[str],
        commit_message: str,
    ) -> str:
        """Back up the ``local_head_ref`` version of each conflicting file.

        Files absent from ``local_head_ref`` (added only on the remote side)
        are skipped. Returns the new backup id.
        """
        conflict_files = list(conflict_files)
        self.root.mkdir(parents=True, exist_ok=True)
        backup_path = unique_child(self.root, timestamp_id())
        backup_path.mkdir()

        saved = 0
        for rel in conflict_files:
            pure = _safe_relative(rel)
            if pure is None:
                log_warning("Not backing up file with unsafe path", file=rel)
                continue
            if local_head_ref is None:
                continue
            try:
                content = handle.show_blob(local_head_ref, rel)
            except LocalRepositoryError:
                log_debug(f"{rel} not present at {local_head_ref}; nothing to back up")
                continue
            atomic_write_bytes(backup_path.joinpath(*pure.parts), content)
            saved += 1

        metadata = BackupMetadata(
            timestamp=utcnow_iso(),
            reason=CONFLICT_REASON,
            conflict_files=conflict_files,
            commit_message=commit_message,
        )
        atomic_write_text(
            backup_path / METADATA_FILENAME,
            json.dumps(metadata.model_dump(by_alias=True), indent=2, ensure_ascii=False),
        )
        log_info(f"Backed up {saved} conflicting file(s)", backup=backup_path.name)
        return backup_path.name

    def _read_metadata(self, backup_path: Path) -> Optional[BackupMetadata]:
        metadata_path = backup_path / METADATA_FILENAME
        if not metadata_path.exists():
            return None
        try:
            return BackupMetadata.model_validate_json(metadata_path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            log_warning(f"Unreadable backup metadata in {backup_path.name}: {e}")
            return None

    def _list_files(self, backup_path: Path) -> List[str]:
        files = []
        for dirpath, _, filenames in os.walk(backup_path):
            for name in filenames:
                full = Path(dirpath) / name
                if full.parent == backup_path and name == METADATA_FILENAME:
                    continue
                files.append(full.relative_to(backup_path).as_posix())
        return sorted(files)

    def list_backups(self) -> List[ConflictBackup]:
        """All backups, newest first."""
        if not self.root.is_dir():
            return []

        backups = []
        for entry in self.root.iterdir():
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            metadata = self._read_metadata(entry)
            files = self._list_files(entry)
            backups.append(
                ConflictBackup(
                    id=entry.name,
                    path=entry,
                    timestamp=metadata.timestamp if metadata else entry.name,
                    reason=metadata.reason if metadata else "unknown",
                    conflict_files=list(metadata.conflict_files) if metadata else list(files),
                    commit_message=metadata.commit_message if metadata else "",
                    files=files,
                )
            )

        backups.sort(key=lambda b: (b.timestamp, b.id), reverse=True)
        return backups

    def restore_file(self, backup_id: str, relative_file: str) -> Path:
        """Copy one file from a backup back into the workspace.

        Both the source and destination are checked against their roots
        before anything is written.

        Raises:
            InvalidBackupPathError: id or path escapes the backup dir or workspace
            BackupNotFoundError: no such backup file
        """
        if not backup_id or "/" in backup_id or "\\" in backup_id or backup_id in (".", ".."):
            raise InvalidBackupPathError("Invalid backup id")

        workspace_root = self.workspace.resolve()
        backups_root = self.root.resolve()
        backup_path = (self.root / backup_id).resolve()
        if not is_within(backup_path, backups_root):
            raise InvalidBackupPathError("Invalid backup id")

        src = (backup_path / relative_file).resolve()
        dest = (workspace_root / relative_file).resolve()
        if not relative_file or not is_within(src, backup_path):
            raise InvalidBackupPathError("Invalid backup path")
        if not is_within(dest, workspace_root) or dest.relative_to(workspace_root).parts[0] == ".git":
            raise InvalidBackupPathError("Invalid destination path")
        if src == backup_path / METADATA_FILENAME:
            raise InvalidBackupPathError("Invalid backup path")

        if not src.is_file():
            raise BackupNotFoundError(f"Backup file not found: {relative_file}")

        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dest)
        log_info(f"Restored {relative_file} from backup {backup_id}")
        return dest


def list_backups(workspace: Path, *, backup_dir: str = BACKUP_DIR_NAME) -> List[ConflictBackup]:
    return ConflictBackupStore(workspace, backup_dir=backup_dir).list_backups()


def restore_file(
    workspace: Path,
    backup_id: str,
    relative_file: str,
    *,
    backup_dir: str = BACKUP_DIR_NAME,
) -> Path:
    return ConflictBackupStore(workspace, backup_dir=backup_dir).restore_file(backup_id, relative_file)
