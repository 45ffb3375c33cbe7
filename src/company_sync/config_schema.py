"""Configuration schema for company-sync.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import warnings
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, Field, field_validator


LARGE_FILE_THRESHOLD = 100 * 1024 * 1024  # 100 MiB


class ServerConfig(BaseModel):
    """Collaborator API connection settings."""

    url: str = Field(
        default="",
        description="Base URL of the company server (e.g. https://acme.example.com)",
    )
    api_prefix: str = Field(
        default="/api",
        description="Path prefix of the JSON API on the server",
    )
    timeout: float = Field(
        default=15.0,
        gt=0,
        description="Timeout in seconds for each API request",
    )

    @field_validator("url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def api_base(self) -> str:
        prefix = self.api_prefix.strip("/")
        return f"{self.url}/{prefix}" if prefix else self.url


class GitConfig(BaseModel):
    """How the git binary is located and which refs are synced."""

    binary: str = Field(
        default="git",
        description="git executable (name on PATH or absolute path)",
    )
    runtime_dir: str = Field(
        default="",
        description="Bundled git runtime root (sets GIT_EXEC_PATH/GIT_TEMPLATE_DIR); empty = system git",
    )
    remote: str = Field(default="origin", description="Remote name to sync with")
    primary_branch: str = Field(default="main", description="Branch pushed and rebased onto")
    fallback_branch: str = Field(
        default="master",
        description="Branch tried once when pushing the primary branch fails",
    )

    @field_validator("runtime_dir")
    @classmethod
    def validate_runtime_dir(cls, v: str) -> str:
        """Warn if the bundled runtime directory doesn't exist."""
        if v:
            path = Path(v).expanduser()
            if not path.is_dir():
                warnings.warn(
                    f"Git runtime directory does not exist: {v}",
                    UserWarning,
                )
        return v

    @property
    def upstream_ref(self) -> str:
        return f"{self.remote}/{self.primary_branch}"


class SyncConfig(BaseModel):
    """Sync pipeline behaviour."""

    default_commit_message: str = Field(
        default="Sync from workspace",
        description="Commit message used when the caller supplies none",
    )
    large_file_threshold: int = Field(
        default=LARGE_FILE_THRESHOLD,
        ge=1,
        description="Files strictly larger than this many bytes are auto-ignored",
    )
    backup_dir: str = Field(
        default=".backups",
        description="Conflict backup directory, relative to the workspace root",
    )
    dependency_dir: str = Field(
        default="node_modules",
        description="Dependency cache directory that is always ignored",
    )
    lock_ttl: int = Field(
        default=3600,
        ge=0,
        description="Seconds after which a leftover sync lock file is considered stale (0 = never)",
    )
    max_rebase_rounds: int = Field(
        default=20,
        ge=1,
        description="Upper bound on conflict resolution rounds within one rebase",
    )

    @field_validator("backup_dir", "dependency_dir")
    @classmethod
    def validate_simple_dir(cls, v: str) -> str:
        parts = PurePosixPath(v.strip("/")).parts
        if len(parts) != 1 or parts[0] in (".", ".."):
            raise ValueError(f"must be a single directory name: {v!r}")
        return parts[0]


class CompanySyncConfig(BaseModel):
    """Root configuration object."""

    version: int = Field(default=1, description="Config schema version")
    server: ServerConfig = Field(default_factory=ServerConfig)
    git: GitConfig = Field(default_factory=GitConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)

    @classmethod
    def default(cls) -> "CompanySyncConfig":
        return cls()

    def skip_dir_names(self) -> frozenset[str]:
        """Directory names never walked or staged as user content."""
        return frozenset({".git", self.sync.backup_dir, self.sync.dependency_dir})

