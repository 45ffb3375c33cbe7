from __future__ import annotations

from typing import Optional

from .api_client import CollaboratorApiError, CollaboratorClient, UserIdentity
from .gateway import GatewayError, RepositoryHandle
from .observability import log_warning


def apply_commit_identity(handle: RepositoryHandle, client: CollaboratorClient) -> Optional[UserIdentity]:
    """Set local ``user.name``/``user.email`` from the signed-in user.

    Best-effort: on failure git falls back to its own identity resolution.
    """
    if not client.cookies:
        return None
    try:
        user = client.get_current_user()
        handle.set_local_config("user.name", user.display_name)
        handle.set_local_config("user.email", user.email)
    except (CollaboratorApiError, GatewayError) as e:
        log_warning(f"Could not set git user identity: {e}")
        return None
    return user
