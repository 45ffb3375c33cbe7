"""Logging for company-sync.

Two kinds of records go to the ``company_sync`` logger:

* free-form messages (``log_info`` and friends) with optional structured
  fields appended as compact JSON;
* one JSON line per pipeline stage (``log_action``, usually through
  ``timeit``), so a sync can be reconstructed from the log file alone.

Records go to a per-process rotating file under ``~/.company-sync/logs`` and,
from WARNING up, to stderr. Environment variables:

- COMPANY_SYNC_LOG_DIR: directory for log files
- COMPANY_SYNC_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- COMPANY_SYNC_LOG_MAX_BYTES: rotation size (default: 10MB)
- COMPANY_SYNC_LOG_BACKUP_COUNT: rotated files kept (default: 5)
- COMPANY_SYNC_LOG_DISABLE_FILE: 1 to log to stderr only
"""

from __future__ import annotations

import json
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from .fs import utcnow_iso

LOGGER_NAME = "company_sync"

ENV_LOG_DIR = "COMPANY_SYNC_LOG_DIR"
ENV_LOG_LEVEL = "COMPANY_SYNC_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "COMPANY_SYNC_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "COMPANY_SYNC_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "COMPANY_SYNC_LOG_DISABLE_FILE"

_FORMAT = "[%(levelname)s %(asctime)s] %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S"
_PROCESS_STARTED = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")

_configured = False


def _truthy(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LogSettings:
    level: int = logging.INFO
    log_dir: Optional[Path] = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 5

    @classmethod
    def from_env(cls) -> "LogSettings":
        level = logging.getLevelName(os.getenv(ENV_LOG_LEVEL, "INFO").strip().upper())
        if not isinstance(level, int):
            level = logging.INFO
        log_dir: Optional[Path] = None
        if not _truthy(os.getenv(ENV_LOG_DISABLE_FILE, "")):
            log_dir = Path(os.getenv(ENV_LOG_DIR) or Path.home() / ".company-sync" / "logs")
        return cls(
            level=level,
            log_dir=log_dir,
            max_bytes=int(os.getenv(ENV_LOG_MAX_BYTES, cls.max_bytes)),
            backup_count=int(os.getenv(ENV_LOG_BACKUP_COUNT, cls.backup_count)),
        )

    @property
    def log_file(self) -> Optional[Path]:
        if self.log_dir is None:
            return None
        return self.log_dir / f"company-sync_{_PROCESS_STARTED}.log"


def configure_logging(settings: Optional[LogSettings] = None) -> logging.Logger:
    """Install the file and stderr handlers on the ``company_sync`` logger.

    Replaces any handlers installed by an earlier call.
    """
    global _configured
    settings = settings or LogSettings.from_env()
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(settings.level)
    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)

    log_file = settings.log_file
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            str(log_file),
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)

    stderr_handler = logging.StreamHandler()
    stderr_handler.setFormatter(formatter)
    stderr_handler.setLevel(max(settings.level, logging.WARNING))
    logger.addHandler(stderr_handler)

    _configured = True
    return logger


def reset_logging() -> None:
    """Drop the installed handlers; the next log call configures again."""
    global _configured
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    _configured = False


def get_logger() -> logging.Logger:
    if not _configured:
        return configure_logging()
    return logging.getLogger(LOGGER_NAME)


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), sort_keys=True, default=str)


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    workspace: Optional[str] = None,
    **fields: Any,
) -> None:
    """Write one JSON line describing a pipeline stage.

    Args:
        action: Stage name, e.g. ``sync.fetch``
        outcome: ``ok``, ``error``, ``skipped`` or a sync status value
        duration_ms: Elapsed time of the stage
        workspace: Workspace path the stage ran against
        **fields: Extra stage-specific values
    """
    record: Dict[str, Any] = {"ts": utcnow_iso(), "action": action, "outcome": outcome}
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 2)
    if workspace is not None:
        record["workspace"] = workspace
    record.update(fields)
    get_logger().info(_dumps(record))


def _emit(level: int, message: str, fields: Dict[str, Any]) -> None:
    logger = get_logger()
    if not logger.isEnabledFor(level):
        return
    logger.log(level, f"{message} {_dumps(fields)}" if fields else message)


def log_debug(message: str, **fields: Any) -> None:
    _emit(logging.DEBUG, message, fields)


def log_info(message: str, **fields: Any) -> None:
    _emit(logging.INFO, message, fields)


def log_warning(message: str, **fields: Any) -> None:
    _emit(logging.WARNING, message, fields)


def log_error(message: str, **fields: Any) -> None:
    _emit(logging.ERROR, message, fields)


@contextmanager
def timeit(action: str, *, workspace: Optional[str] = None, **fields: Any) -> Iterator[Dict[str, Any]]:
    """Time the block and log it with :func:`log_action`.

    The block may set ``info["outcome"]`` and any other keys on the yielded
    dict. An exception is logged with outcome ``error`` and re-raised.
    """
    info: Dict[str, Any] = {}
    started = time.perf_counter()
    try:
        yield info
    except Exception:
        log_action(
            action,
            outcome="error",
            duration_ms=(time.perf_counter() - started) * 1000.0,
            workspace=workspace,
            **fields,
        )
        raise
    outcome = info.pop("outcome", "ok")
    log_action(
        action,
        outcome=outcome,
        duration_ms=(time.perf_counter() - started) * 1000.0,
        workspace=workspace,
        **{**fields, **info},
    )
