"""Keep mandatory department folders present in the workspace.

Each department owns a top-level folder. Deleting one locally must never
propagate to the server, so before staging every missing folder is restored
from the remote tracking branch, or recreated with a placeholder file when the
remote never had it.
"""

from __future__ import annotations

from pathlib import Path, PurePosixPath
from typing import List

from .api_client import CollaboratorApiError, CollaboratorClient
from .gateway import GatewayError, RepositoryHandle
from .observability import log_info, log_warning

PLACEHOLDER_NAME = ".gitkeep"


def _is_safe_folder(folder: str) -> bool:
    pure = PurePosixPath(folder.replace("\\", "/"))
    return bool(folder.strip()) and not pure.is_absolute() and ".." not in pure.parts


def restore_missing(
    handle: RepositoryHandle,
    workspace_id: str,
    client: CollaboratorClient,
    *,
    upstream_ref: str = "origin/main",
) -> List[str]:
    """Restore department folders missing from the working tree.

    Returns the folders that were restored or recreated. If the department
    list cannot be fetched the step is skipped and ``[]`` returned.
    """
    try:
        departments = client.list_departments(workspace_id)
    except CollaboratorApiError as e:
        log_warning(f"Could not fetch departments, skipping folder protection: {e}")
        return []

    root = handle.working_dir
    restored: List[str] = []
    for dept in departments:
        folder = dept.folder.strip().strip("/")
        if not _is_safe_folder(folder):
            log_warning("Ignoring department with unsafe folder path", folder=dept.folder)
            continue
        target = root / Path(folder)
        if target.exists():
            continue

        log_info(f"Restoring deleted department folder: {folder}")
        try:
            handle.checkout_path(upstream_ref, folder)
        except GatewayError as e:
            log_warning(f"Could not restore {folder} from {upstream_ref}, creating empty: {e}")
            target.mkdir(parents=True, exist_ok=True)
            (target / PLACEHOLDER_NAME).write_bytes(b"")
        restored.append(folder)

    return restored
