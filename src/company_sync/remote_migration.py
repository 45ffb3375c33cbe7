"""Rewrite legacy SSH remotes to the server's HTTPS URL.

Older workspaces were set up with an SSH ``origin``. Authentication now goes
through the session token over HTTPS, so before each sync a non-HTTPS origin
is replaced with the canonical URL the server reports.
"""

from __future__ import annotations

from .api_client import CollaboratorApiError, CollaboratorClient
from .gateway import GatewayError, RepositoryHandle
from .observability import log_info, log_warning


def migrate_if_needed(
    handle: RepositoryHandle,
    workspace_id: str,
    client: CollaboratorClient,
    *,
    remote: str = "origin",
) -> bool:
    """Return True if the remote was rewritten. Never raises."""
    try:
        url = handle.remote_url(remote)
        if not url or url.startswith("https://"):
            return False

        log_info("Detected non-HTTPS remote URL, migrating", remote=remote)
        https_url = client.get_repository(workspace_id).https_url
        if not https_url:
            log_warning("Server returned no HTTPS URL; keeping current remote", remote=remote)
            return False

        handle.remove_remote(remote)
        handle.add_remote(remote, https_url)
    except (CollaboratorApiError, GatewayError) as e:
        log_warning(f"Remote URL migration check failed: {e}")
        return False

    log_info(f"Migrated remote URL to {https_url}", remote=remote)
    return True
