"""Entry points for the UI layer.

Every method returns a plain JSON-serializable dict shaped
``{"success": bool, ...}``; failures are reported in ``error`` rather than
raised, so callers across a process boundary need no exception mapping.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional

from .api_client import CollaboratorClient
from .backups import BackupError, ConflictBackupStore
from .config_loader import get_config
from .config_schema import CompanySyncConfig
from .credentials import load_session_cookies
from .lock import WorkspaceLockRegistry
from .observability import log_error, log_warning
from .provisioning import ProvisioningError, create_remote_repository, setup_remote
from .sync import SyncOrchestrator


class SyncService:
    """Owns the workspace lock registry for the life of the process."""

    def __init__(
        self,
        config: CompanySyncConfig,
        cookies: Iterable[str] = (),
        *,
        client: Optional[CollaboratorClient] = None,
        locks: Optional[WorkspaceLockRegistry] = None,
    ):
        self.config = config
        self.cookies: List[str] = list(cookies)
        self.client = client or CollaboratorClient(config.server, self.cookies)
        self.locks = locks or WorkspaceLockRegistry()

    @classmethod
    def from_environment(cls, project_path: Optional[Path] = None) -> "SyncService":
        """Build a service from the loaded config and the stored session."""
        return cls(get_config(project_path), load_session_cookies())

    def _orchestrator(self) -> SyncOrchestrator:
        return SyncOrchestrator(self.config, self.client, cookies=self.cookies, locks=self.locks)

    def sync_workspace(
        self,
        workspace_path: Path,
        workspace_id: str,
        commit_message: Optional[str] = None,
    ) -> dict:
        return self._orchestrator().sync(workspace_path, workspace_id, commit_message).to_dict()

    def list_backups(self, workspace_path: Path) -> dict:
        store = ConflictBackupStore(Path(workspace_path), backup_dir=self.config.sync.backup_dir)
        try:
            backups = store.list_backups()
        except OSError as e:
            log_error(f"Listing backups failed: {e}", workspace=str(workspace_path))
            return {"success": False, "error": str(e), "backups": []}
        return {"success": True, "backups": [b.to_dict() for b in backups]}

    def restore_backup_file(self, workspace_path: Path, backup_id: str, relative_file: str) -> dict:
        store = ConflictBackupStore(Path(workspace_path), backup_dir=self.config.sync.backup_dir)
        try:
            store.restore_file(backup_id, relative_file)
        except (BackupError, OSError) as e:
            log_warning(f"Restore failed: {e}", workspace=str(workspace_path), backup=backup_id)
            return {"success": False, "error": str(e)}
        return {"success": True, "message": f"Restored: {relative_file}"}

    def setup_workspace_remote(self, workspace_path: Path, workspace_id: str) -> dict:
        try:
            result = setup_remote(
                Path(workspace_path),
                workspace_id,
                config=self.config,
                client=self.client,
                cookies=self.cookies,
            )
        except ProvisioningError as e:
            log_error(str(e), workspace=str(workspace_path))
            return {"success": False, "error": str(e)}
        return result.to_dict()

    def create_remote_repository(self, workspace_id: str) -> dict:
        try:
            info = create_remote_repository(workspace_id, self.client)
        except ProvisioningError as e:
            log_error(str(e), workspace_id=workspace_id)
            return {"success": False, "error": str(e)}
        return {"success": True, "httpsUrl": info.https_url}

    def shutdown(self) -> None:
        self.locks.shutdown()
