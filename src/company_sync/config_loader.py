"""Configuration loading for company-sync.

Layers, later ones winning key by key:

1. defaults from :mod:`company_sync.config_schema`
2. ``~/.company-sync/config.toml``
3. ``.company-sync/config.toml`` in the workspace or its nearest ancestor
4. ``COMPANY_SYNC_*`` environment variables (see ``ENV_OVERRIDES``)

An unreadable user file only warns; an unreadable project file is an error
because it is usually shared through the repository.
"""

from __future__ import annotations

import os
import sys
import threading
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from pydantic import ValidationError

from .config_schema import CompanySyncConfig

CONFIG_DIRNAME = ".company-sync"
CONFIG_FILENAME = "config.toml"

ENV_OVERRIDES: Dict[str, str] = {
    "COMPANY_SYNC_SERVER_URL": "server.url",
    "COMPANY_SYNC_API_PREFIX": "server.api_prefix",
    "COMPANY_SYNC_HTTP_TIMEOUT": "server.timeout",
    "COMPANY_SYNC_GIT_BINARY": "git.binary",
    "COMPANY_SYNC_GIT_RUNTIME_DIR": "git.runtime_dir",
    "COMPANY_SYNC_GIT_REMOTE": "git.remote",
    "COMPANY_SYNC_PRIMARY_BRANCH": "git.primary_branch",
    "COMPANY_SYNC_FALLBACK_BRANCH": "git.fallback_branch",
    "COMPANY_SYNC_COMMIT_MESSAGE": "sync.default_commit_message",
    "COMPANY_SYNC_LARGE_FILE_THRESHOLD": "sync.large_file_threshold",
    "COMPANY_SYNC_LOCK_TTL": "sync.lock_ttl",
}


class ConfigError(Exception):
    """Configuration could not be read or did not validate."""


@dataclass(frozen=True)
class ConfigSource:
    kind: str  # "user" or "project"
    path: Path


def user_config_dir() -> Path:
    return Path.home() / CONFIG_DIRNAME


def find_project_config_dir(start: Optional[Path] = None) -> Optional[Path]:
    """Nearest ``.company-sync`` directory at or above ``start``.

    The user-level directory never counts, even when the workspace lives in
    the home directory.
    """
    user_dir = user_config_dir().resolve()
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / CONFIG_DIRNAME
        if candidate.is_dir() and candidate.resolve() != user_dir:
            return candidate
    return None


def discover_sources(project_path: Optional[Path] = None) -> List[ConfigSource]:
    """Config files that exist, lowest precedence first."""
    sources = []
    user_file = user_config_dir() / CONFIG_FILENAME
    if user_file.is_file():
        sources.append(ConfigSource("user", user_file))
    project_dir = find_project_config_dir(project_path)
    if project_dir is not None and (project_dir / CONFIG_FILENAME).is_file():
        sources.append(ConfigSource("project", project_dir / CONFIG_FILENAME))
    return sources


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "rb") as fh:
            return tomllib.load(fh)
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``base`` updated with ``override``; tables merge, other values replace."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def env_overrides() -> Dict[str, Any]:
    """Nested dict of the ``COMPANY_SYNC_*`` variables that are set.

    Values stay strings; pydantic converts them during validation.
    """
    overrides: Dict[str, Any] = {}
    for env_var, dotted in ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        *sections, key = dotted.split(".")
        table = overrides
        for section in sections:
            table = table.setdefault(section, {})
        table[key] = value
    return overrides


def load_config(project_path: Optional[Path] = None, skip_env: bool = False) -> CompanySyncConfig:
    """Read and validate the layered configuration.

    Raises:
        ConfigError: the project file is unreadable or the result is invalid
    """
    data: Dict[str, Any] = {}
    for source in discover_sources(project_path):
        try:
            layer = _read_toml(source.path)
        except ConfigError as e:
            if source.kind == "project":
                raise ConfigError(f"Invalid project config: {e}") from e
            warnings.warn(f"Ignoring user config: {e}", UserWarning)
            continue
        data = _deep_merge(data, layer)

    if not skip_env:
        data = _deep_merge(data, env_overrides())

    try:
        return CompanySyncConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}") from e


_cache: Dict[Optional[Path], CompanySyncConfig] = {}
_cache_lock = threading.Lock()


def get_config(project_path: Optional[Path] = None, force_reload: bool = False) -> CompanySyncConfig:
    """Cached :func:`load_config`, one entry per resolved project path."""
    key = Path(project_path).resolve() if project_path else None
    with _cache_lock:
        if force_reload or key not in _cache:
            _cache[key] = load_config(project_path)
        return _cache[key]


def clear_config_cache() -> None:
    with _cache_lock:
        _cache.clear()
