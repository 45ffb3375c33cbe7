"""First-time setup of a workspace against its server repository.

Two situations are handled:

* The server repository already has branches (a member joining an existing
  company): they are fetched and checked out, or the local commits rebased on
  top of them.
* The server repository is empty (the owner's first setup): a default ignore
  file and an ``Initial commit`` are created when the workspace has no
  history, and the current branch is pushed with upstream tracking.

The bare repository itself is created server-side through
:func:`create_remote_repository`.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional

from .api_client import CollaboratorApiError, CollaboratorClient, RepositoryInfo
from .config_schema import CompanySyncConfig
from .fs import atomic_write_text
from .gateway import (
    GatewayError,
    PushError,
    RepositoryHandle,
    init_repository,
    is_repository,
    open_repository,
)
from .identity import apply_commit_identity
from .ignore_rules import IGNORE_FILENAME
from .observability import log_info, log_warning, timeit

DEFAULT_IGNORE_CONTENT = ".DS_Store\n*.log\nnode_modules/\n"
INITIAL_COMMIT_MESSAGE = "Initial commit"


class ProvisioningError(Exception):
    """Raised when a workspace cannot be connected to its server repository."""


@dataclass(frozen=True)
class SetupResult:
    remote_url: str
    cloned: bool
    branch: Optional[str]
    message: str

    def to_dict(self) -> dict:
        return {
            "success": True,
            "remoteUrl": self.remote_url,
            "cloned": self.cloned,
            "branch": self.branch,
            "message": self.message,
        }


def _pick_branch(heads: List[str], preferred: str) -> str:
    if preferred in heads:
        return preferred
    return heads[0]


def _open_or_init(path: Path, config: CompanySyncConfig, cookies: List[str]) -> RepositoryHandle:
    if is_repository(path):
        return open_repository(path, config=config.git, cookies=cookies)
    handle = init_repository(path, config=config.git, cookies=cookies)
    handle.point_head_at(config.git.primary_branch)
    log_info("Initialized repository", workspace=str(path), branch=config.git.primary_branch)
    return handle


def _join_existing(handle: RepositoryHandle, config: CompanySyncConfig, heads: List[str]) -> str:
    remote = config.git.remote
    branch = _pick_branch(heads, config.git.primary_branch)
    handle.fetch(remote)
    if not handle.has_commits():
        handle.checkout_new_branch(branch, f"{remote}/{branch}")
        log_info(f"Checked out {remote}/{branch}")
        return branch

    try:
        handle.pull_rebase(remote, branch)
        log_info(f"Rebased local commits onto {remote}/{branch}")
    except GatewayError as e:
        # The next sync resolves whatever is left
        log_warning(f"Pull failed during setup, leaving it to the next sync: {e}")
        if handle.rebase_in_progress():
            handle.rebase_abort()
    return handle.current_branch() or branch


def _seed_empty_remote(handle: RepositoryHandle, config: CompanySyncConfig) -> str:
    if not handle.has_commits():
        ignore_path = handle.working_dir / IGNORE_FILENAME
        if not ignore_path.exists():
            atomic_write_text(ignore_path, DEFAULT_IGNORE_CONTENT)
        handle.add_all()
        handle.commit(INITIAL_COMMIT_MESSAGE)

    branch = handle.current_branch() or config.git.primary_branch
    try:
        handle.push(config.git.remote, branch)
        log_info(f"Pushed to {config.git.remote}/{branch}")
    except PushError as e:
        log_warning(f"Push failed during setup (network issue or first push): {e.output}")
    return branch


def setup_remote(
    path: Path,
    workspace_id: str,
    *,
    config: CompanySyncConfig,
    client: CollaboratorClient,
    cookies: Iterable[str] = (),
) -> SetupResult:
    """Connect the workspace at ``path`` to its server repository.

    Raises:
        ProvisioningError: the server has no repository URL, or a local git
            step failed
    """
    path = Path(path)
    cookies = list(cookies)
    try:
        https_url = client.get_repository(workspace_id).https_url
    except CollaboratorApiError as e:
        raise ProvisioningError(f"Failed to get repository info from server: {e}") from e
    if not https_url:
        raise ProvisioningError("Server did not return a repository URL")

    with timeit("setup", workspace=str(path)) as info:
        try:
            handle = _open_or_init(path, config, cookies)
            apply_commit_identity(handle, client)
            handle.set_remote(config.git.remote, https_url)

            try:
                heads = handle.ls_remote_heads(config.git.remote)
            except GatewayError as e:
                log_warning(f"ls-remote failed, treating remote as empty: {e}")
                heads = []

            if heads:
                branch = _join_existing(handle, config, heads)
                result = SetupResult(https_url, True, branch, f"Cloned from server: {https_url}")
            else:
                branch = _seed_empty_remote(handle, config)
                result = SetupResult(https_url, False, branch, f"Git remote configured: {https_url}")
        except (GatewayError, OSError) as e:
            raise ProvisioningError(f"Workspace setup failed: {e}") from e
        info["cloned"] = result.cloned

    return result


def create_remote_repository(workspace_id: str, client: CollaboratorClient) -> RepositoryInfo:
    """Ask the server to create the bare repository for ``workspace_id``."""
    try:
        info = client.create_repository(workspace_id)
    except CollaboratorApiError as e:
        raise ProvisioningError(f"Repository creation failed: {e}") from e
    log_info("Server repository ready", workspace_id=workspace_id, url=info.https_url)
    return info
