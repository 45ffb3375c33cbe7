"""company-sync: keep a file-based company workspace in sync with its server repository."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("company-sync")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .lock import WorkspaceLockRegistry  # noqa: F401
from .service import SyncService  # noqa: F401
from .sync import SyncOrchestrator, SyncResult, SyncStatus  # noqa: F401

__all__ = [
    "SyncOrchestrator",
    "SyncResult",
    "SyncService",
    "SyncStatus",
    "WorkspaceLockRegistry",
    "__version__",
]
