"""The workspace synchronization pipeline.

One call to :meth:`SyncOrchestrator.sync` runs these stages in order, as a
single sequential pipeline per workspace:

1. Prepare   - open the repository, migrate a legacy remote, set identity
2. Guard     - mandatory ignore entries, quarantine oversized files
3. Fetch     - update remote-tracking refs (non-fatal)
4. Protect   - restore deleted department folders
5. Commit    - stage everything and commit if anything changed
6. Integrate - rebase onto the remote; conflicts are backed up and resolved
               with the remote's version
7. Push      - primary branch, then one retry on the fallback branch

Conflict resolution is deterministic: the remote always wins, and the local
version of every conflicting file is saved under ``.backups/`` first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

from .api_client import CollaboratorClient
from .backups import ConflictBackupStore
from .config_schema import CompanySyncConfig
from .departments import restore_missing
from .gateway import (
    GatewayError,
    PushError,
    RebaseConflictError,
    RepositoryHandle,
    open_repository,
)
from .identity import apply_commit_identity
from .ignore_rules import edit as edit_ignore_rules
from .ignore_rules import ensure_mandatory_entries
from .large_files import quarantine_oversized
from .lock import WorkspaceBusyError, WorkspaceLockRegistry, workspace_file_lock
from .observability import log_action, log_error, log_info, log_warning, timeit
from .remote_migration import migrate_if_needed

SECRET_MARKER = "SECRET_DETECTED"
BUSY_REASON = "sync already in progress"


class SyncStatus(str, Enum):
    """Terminal outcome of one sync."""

    SYNCED = "synced"
    SYNCED_WITH_CONFLICTS = "synced_with_conflicts"
    PUSH_FAILED = "push_failed"
    SECRET_DETECTED = "secret_detected"
    FAILED = "failed"


@dataclass
class SyncResult:
    status: SyncStatus
    message: str
    restored_folders: List[str] = field(default_factory=list)
    ignored_large_files: List[str] = field(default_factory=list)
    conflict_files: List[str] = field(default_factory=list)
    backup_id: Optional[str] = None
    committed_locally: bool = False
    secret_files: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    @property
    def success(self) -> bool:
        # A failed push still leaves the change committed locally
        return self.status in (SyncStatus.SYNCED, SyncStatus.SYNCED_WITH_CONFLICTS, SyncStatus.PUSH_FAILED)

    def to_dict(self) -> dict:
        payload = {
            "success": self.success,
            "status": self.status.value,
            "message": self.message,
            "restoredFolders": list(self.restored_folders),
            "ignoredLargeFiles": list(self.ignored_large_files),
        }
        if self.status == SyncStatus.SYNCED_WITH_CONFLICTS or self.conflict_files:
            payload["hadConflicts"] = True
            payload["conflictFiles"] = list(self.conflict_files)
            payload["backupId"] = self.backup_id
        if self.status == SyncStatus.PUSH_FAILED:
            payload["pushFailed"] = True
            payload["committedLocally"] = self.committed_locally
        if self.status == SyncStatus.SECRET_DETECTED:
            payload["secretDetected"] = True
            payload["fileList"] = list(self.secret_files)
        if self.reason is not None:
            payload["error"] = self.reason
        return payload


def parse_secret_files(text: str) -> List[str]:
    """Itemized files from a secret-scan rejection.

    git prefixes pre-receive hook output with ``remote:``; items are the
    lines starting with ``- `` once that prefix is removed.
    """
    files = []
    for line in text.splitlines():
        line = line.strip()
        if line.startswith("remote:"):
            line = line[len("remote:"):]
        line = line.strip()
        if line.startswith("- "):
            item = line[2:].strip()
            if item:
                files.append(item)
    return files


class _SyncFailed(Exception):
    """Aborts the pipeline with a FAILED result."""


@dataclass
class _Run:
    """Mutable state of one pipeline run."""

    workspace: Path
    workspace_id: str
    commit_message: str
    handle: Optional[RepositoryHandle] = None
    restored_folders: List[str] = field(default_factory=list)
    ignored_large_files: List[str] = field(default_factory=list)
    committed: bool = False
    local_head_ref: Optional[str] = None
    conflict_files: List[str] = field(default_factory=list)
    backup_id: Optional[str] = None

    def result(self, status: SyncStatus, message: str, **kwargs) -> SyncResult:
        return SyncResult(
            status=status,
            message=message,
            restored_folders=list(self.restored_folders),
            ignored_large_files=list(self.ignored_large_files),
            conflict_files=list(self.conflict_files),
            backup_id=self.backup_id,
            **kwargs,
        )


class SyncOrchestrator:
    """Runs sync pipelines.

    Args:
        config: Loaded configuration
        client: Collaborator API client carrying the session cookies
        cookies: Session cookies; the git token is derived from them
        locks: Process-wide workspace lock registry
    """

    def __init__(
        self,
        config: CompanySyncConfig,
        client: CollaboratorClient,
        *,
        cookies: Iterable[str] = (),
        locks: Optional[WorkspaceLockRegistry] = None,
    ):
        self.config = config
        self.client = client
        self.cookies = list(cookies)
        self.locks = locks or WorkspaceLockRegistry()

    def sync(
        self,
        workspace_path: Path,
        workspace_id: str,
        commit_message: Optional[str] = None,
    ) -> SyncResult:
        """Synchronize the workspace with its remote. Never raises for git or API failures."""
        run = _Run(
            workspace=Path(workspace_path),
            workspace_id=workspace_id,
            commit_message=(commit_message or "").strip() or self.config.sync.default_commit_message,
        )
        ws = str(run.workspace)

        try:
            with self.locks.hold(run.workspace):
                with timeit("sync", workspace=ws) as info:
                    result = self._run_locked(run)
                    info["outcome"] = result.status.value
                return result
        except WorkspaceBusyError as e:
            log_warning(str(e), workspace=ws)
            return run.result(SyncStatus.FAILED, "Sync is already running for this workspace", reason=BUSY_REASON)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run_locked(self, run: _Run) -> SyncResult:
        try:
            run.handle = open_repository(run.workspace, config=self.config.git, cookies=self.cookies)
            with workspace_file_lock(run.handle.git_dir, ttl=self.config.sync.lock_ttl):
                self._prepare(run)
                self._guard(run)
                self._fetch(run)
                self._protect(run)
                self._commit(run)
                self._integrate(run)
                return self._push(run)
        except WorkspaceBusyError as e:
            log_warning(str(e), workspace=str(run.workspace))
            return run.result(SyncStatus.FAILED, "Sync is already running for this workspace", reason=BUSY_REASON)
        except (_SyncFailed, GatewayError, OSError) as e:
            log_error(f"Sync failed: {e}", workspace=str(run.workspace))
            return run.result(SyncStatus.FAILED, f"Sync failed: {e}", reason=str(e))

    def _prepare(self, run: _Run) -> None:
        with timeit("sync.prepare", workspace=str(run.workspace)) as info:
            info["migrated"] = migrate_if_needed(
                run.handle, run.workspace_id, self.client, remote=self.config.git.remote
            )
            info["identity"] = apply_commit_identity(run.handle, self.client) is not None

    def _guard(self, run: _Run) -> None:
        sync_cfg = self.config.sync
        with timeit("sync.guard", workspace=str(run.workspace)) as info:
            with edit_ignore_rules(run.workspace) as rules:
                ensure_mandatory_entries(
                    rules,
                    backup_dir=sync_cfg.backup_dir,
                    dependency_dir=sync_cfg.dependency_dir,
                )
                run.ignored_large_files = quarantine_oversized(
                    run.workspace,
                    rules,
                    threshold=sync_cfg.large_file_threshold,
                    skip_dirs=self.config.skip_dir_names(),
                )
            info["ignored_large_files"] = len(run.ignored_large_files)

    def _fetch(self, run: _Run) -> None:
        try:
            with timeit("sync.fetch", workspace=str(run.workspace)):
                run.handle.fetch(self.config.git.remote)
        except GatewayError as e:
            log_warning(f"Fetch failed, continuing: {e}", workspace=str(run.workspace))

    def _protect(self, run: _Run) -> None:
        with timeit("sync.protect", workspace=str(run.workspace)) as info:
            run.restored_folders = restore_missing(
                run.handle,
                run.workspace_id,
                self.client,
                upstream_ref=self.config.git.upstream_ref,
            )
            info["restored_folders"] = len(run.restored_folders)

    def _commit(self, run: _Run) -> None:
        handle = run.handle
        with timeit("sync.commit", workspace=str(run.workspace)) as info:
            handle.add_all()
            if handle.status().has_changes:
                handle.commit(run.commit_message)
                run.committed = True
            run.local_head_ref = handle.rev_parse_head()
            info["committed"] = run.committed

    def _integrate(self, run: _Run) -> None:
        handle = run.handle
        git_cfg = self.config.git
        ws = str(run.workspace)
        if not handle.has_commits():
            log_info("No local commits yet; nothing to rebase", workspace=ws)
            return

        try:
            handle.pull_rebase(git_cfg.remote, git_cfg.primary_branch)
            log_action("sync.integrate", workspace=ws, conflicts=0)
            return
        except RebaseConflictError as e:
            conflicts = e.conflict_files
        except GatewayError as e:
            # Typically a network failure or an empty remote; the local commit stays
            log_warning(f"Pull failed without conflicts, continuing to push: {e}", workspace=ws)
            if handle.rebase_in_progress():
                handle.rebase_abort()
            return

        store = ConflictBackupStore(run.workspace, backup_dir=self.config.sync.backup_dir)
        rounds = 0
        while conflicts:
            rounds += 1
            if rounds > self.config.sync.max_rebase_rounds:
                self._abort_rebase(handle)
                raise _SyncFailed(
                    f"Gave up resolving conflicts after {self.config.sync.max_rebase_rounds} rounds"
                )

            log_info(f"Conflict detected in {len(conflicts)} file(s)", workspace=ws, files=conflicts)
            try:
                backup_id = store.snapshot(handle, run.local_head_ref, conflicts, run.commit_message)
            except (OSError, GatewayError) as e:
                self._abort_rebase(handle)
                raise _SyncFailed(f"Could not back up conflicting files: {e}") from e

            if run.backup_id is None:
                run.backup_id = backup_id
            for path in conflicts:
                if path not in run.conflict_files:
                    run.conflict_files.append(path)

            try:
                handle.resolve_with_upstream(conflicts)
            except GatewayError as e:
                self._abort_rebase(handle)
                raise _SyncFailed(f"Could not resolve conflicts: {e}") from e
            self._continue_rebase(handle)

            if not handle.rebase_in_progress():
                break
            conflicts = handle.status().conflicted
            if not conflicts:
                # Stopped on something other than a conflict
                self._abort_rebase(handle)
                raise _SyncFailed("Rebase stopped without conflicts and could not be continued")

        log_action(
            "sync.integrate",
            outcome="conflicts_resolved",
            workspace=ws,
            conflicts=len(run.conflict_files),
            rounds=rounds,
            backup_id=run.backup_id,
        )

    @staticmethod
    def _continue_rebase(handle: RepositoryHandle) -> None:
        """Move the rebase past the resolved commit.

        When a later commit stops with new conflicts the rebase is left there
        for the next round. Only a commit that became empty after resolution
        is skipped.
        """
        try:
            handle.rebase_continue()
            return
        except GatewayError as e:
            conflicted = handle.status().conflicted
            if conflicted:
                log_info("Rebase stopped again on a later commit", conflicts=conflicted)
                return
            log_info(f"Rebase continue failed, skipping the empty commit: {e}")
        try:
            handle.rebase_skip()
        except GatewayError as skip_error:
            # Skipping onto a conflicting commit also exits non-zero
            if not handle.status().conflicted:
                log_warning(f"Rebase skip failed: {skip_error}")

    @staticmethod
    def _abort_rebase(handle: RepositoryHandle) -> None:
        if not handle.rebase_in_progress():
            return
        try:
            handle.rebase_abort()
        except GatewayError as e:
            log_error(f"Could not abort rebase: {e}")

    def _push(self, run: _Run) -> SyncResult:
        handle = run.handle
        git_cfg = self.config.git
        ws = str(run.workspace)
        had_conflicts = bool(run.conflict_files)

        ahead = 0
        if not run.committed and not had_conflicts:
            ahead = handle.commits_ahead(git_cfg.upstream_ref)
            if not ahead:
                log_action("sync.push", outcome="skipped", workspace=ws)
                return run.result(SyncStatus.SYNCED, self._synced_message(run))

        with timeit("sync.push", workspace=ws, ahead=ahead) as info:
            branch = git_cfg.primary_branch
            try:
                handle.push(git_cfg.remote, branch)
            except PushError as e:
                secret = self._secret_result(run, e)
                if secret is not None:
                    info["outcome"] = "secret_detected"
                    return secret
                log_warning(f"Push to {branch} failed, trying {git_cfg.fallback_branch}: {e.output}", workspace=ws)

                branch = git_cfg.fallback_branch
                try:
                    handle.push(git_cfg.remote, branch)
                except PushError as fallback_error:
                    secret = self._secret_result(run, fallback_error)
                    if secret is not None:
                        info["outcome"] = "secret_detected"
                        return secret
                    log_error(f"Push to {branch} also failed: {fallback_error.output}", workspace=ws)
                    info["outcome"] = "push_failed"
                    return run.result(
                        SyncStatus.PUSH_FAILED,
                        "Committed locally, but the push failed. Sync again later to upload.",
                        committed_locally=True,
                        reason=fallback_error.output or str(fallback_error),
                    )
            info["branch"] = branch

        if had_conflicts:
            return run.result(
                SyncStatus.SYNCED_WITH_CONFLICTS,
                f"Sync complete. {len(run.conflict_files)} conflicting file(s) were replaced with "
                f"the server version; your copies are in backup {run.backup_id}. "
                "All other changes were applied.",
            )
        return run.result(SyncStatus.SYNCED, self._synced_message(run))

    @staticmethod
    def _secret_result(run: _Run, error: PushError) -> Optional[SyncResult]:
        text = error.output or str(error)
        if SECRET_MARKER not in text:
            return None
        files = parse_secret_files(text)
        log_warning("Push rejected by secret scanning", workspace=str(run.workspace), files=files)
        listing = "\n".join(f"- {f}" for f in files) if files else "(no details)"
        return run.result(
            SyncStatus.SECRET_DETECTED,
            "Secrets such as API keys were detected. Remove them from these files and sync again.\n\n"
            + listing,
            secret_files=files,
        )

    @staticmethod
    def _synced_message(run: _Run) -> str:
        if run.restored_folders:
            message = f"Restored department folders: {', '.join(run.restored_folders)}"
        else:
            message = "Sync complete"
        if run.ignored_large_files:
            message += f" ({len(run.ignored_large_files)} large file(s) excluded from sync)"
        return message
