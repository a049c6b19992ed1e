"""Logging for gitflow.

One named logger, configured on first use from the environment:

- ``GITFLOW_LOG_LEVEL``: DEBUG, INFO, WARNING or ERROR (default INFO)
- ``GITFLOW_LOG_DIR``: directory for the rotating session log
  (default ``~/.gitflow/logs``)
- ``GITFLOW_LOG_MAX_BYTES`` / ``GITFLOW_LOG_BACKUP_COUNT``: rotation
- ``GITFLOW_LOG_DISABLE_FILE=1``: stderr only

stderr never shows anything below WARNING; the front end owns the screen.
Actions are logged as one JSON object per line so they can be grepped and
parsed back.
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
from typing import Any, Dict, Iterator, List, Optional


LOGGER_NAME = "gitflow"

ENV_LOG_DIR = "GITFLOW_LOG_DIR"
ENV_LOG_LEVEL = "GITFLOW_LOG_LEVEL"
ENV_LOG_MAX_BYTES = "GITFLOW_LOG_MAX_BYTES"
ENV_LOG_BACKUP_COUNT = "GITFLOW_LOG_BACKUP_COUNT"
ENV_LOG_DISABLE_FILE = "GITFLOW_LOG_DISABLE_FILE"

DEFAULT_LOG_DIR = Path.home() / ".gitflow" / "logs"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

_FORMAT = "[%(levelname)s %(asctime)s] %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S"

_logger_initialized = False
_session_start = datetime.now(timezone.utc).strftime("%Y-%m-%d_%H%M%S")


@dataclass
class _FileSettings:
    path: Path
    max_bytes: int
    backup_count: int


def _get_log_level() -> int:
    name = os.getenv(ENV_LOG_LEVEL, "INFO").strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


def _get_log_file_path() -> Optional[Path]:
    """Session log file, or None when file logging is off or impossible."""
    if os.getenv(ENV_LOG_DISABLE_FILE, "").strip().lower() in ("1", "true", "yes"):
        return None
    log_dir = Path(os.getenv(ENV_LOG_DIR) or DEFAULT_LOG_DIR).expanduser()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None
    return log_dir / f"gitflow_{_session_start}.log"


def _file_settings() -> Optional[_FileSettings]:
    path = _get_log_file_path()
    if path is None:
        return None
    return _FileSettings(
        path=path,
        max_bytes=_env_int(ENV_LOG_MAX_BYTES, DEFAULT_MAX_BYTES),
        backup_count=_env_int(ENV_LOG_BACKUP_COUNT, DEFAULT_BACKUP_COUNT),
    )


def _build_handlers(level: int) -> List[logging.Handler]:
    handlers: List[logging.Handler] = []
    settings = _file_settings()
    if settings is not None:
        file_handler = RotatingFileHandler(
            str(settings.path),
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        handlers.append(file_handler)

    stderr_handler = logging.StreamHandler()
    stderr_handler.setLevel(max(level, logging.WARNING))
    handlers.append(stderr_handler)
    return handlers


def _get_logger() -> logging.Logger:
    global _logger_initialized
    logger = logging.getLogger(LOGGER_NAME)
    if _logger_initialized:
        return logger

    _logger_initialized = True
    level = _get_log_level()
    logger.setLevel(level)
    logger.handlers.clear()
    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)
    for handler in _build_handlers(level):
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


def _dumps(data: Dict[str, Any]) -> str:
    return json.dumps(data, separators=(",", ":"), sort_keys=True, default=str)


def _with_fields(message: str, fields: Dict[str, Any]) -> str:
    return f"{message} {_dumps(fields)}" if fields else message


def log_action(
    action: str,
    *,
    outcome: str = "ok",
    duration_ms: Optional[float] = None,
    **fields: Any,
) -> None:
    """Log one finished action (``sync.push``, ``rebase.execute``, ...) as JSON.

    ``outcome`` is free-form but conventionally one of ok, error, conflict,
    skipped, stale or stopped.
    """
    record: Dict[str, Any] = dict(fields)
    record.update(
        ts=datetime.now(timezone.utc).isoformat(),
        action=action,
        outcome=outcome,
    )
    if duration_ms is not None:
        record["duration_ms"] = round(duration_ms, 2)
    _get_logger().info(_dumps(record))


def log_debug(message: str, **fields: Any) -> None:
    logger = _get_logger()
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(_with_fields(message, fields))


def log_warning(message: str, **fields: Any) -> None:
    _get_logger().warning(_with_fields(message, fields))


def log_error(message: str, **fields: Any) -> None:
    _get_logger().error(_with_fields(message, fields))


@contextmanager
def timeit(action: str, **fields: Any) -> Iterator[Dict[str, Any]]:
    """Log ``action`` with its duration when the block exits.

    The block receives a dict; keys it sets are logged as extra fields and an
    ``outcome`` key replaces the default "ok". An exception is logged as
    outcome "error" and re-raised.
    """
    info: Dict[str, Any] = {}
    start = time.perf_counter()

    def elapsed_ms() -> float:
        return (time.perf_counter() - start) * 1000.0

    try:
        yield info
    except Exception:
        log_action(action, outcome="error", duration_ms=elapsed_ms(), **fields)
        raise
    outcome = info.pop("outcome", "ok")
    log_action(action, outcome=outcome, duration_ms=elapsed_ms(), **{**fields, **info})
