"""Layered configuration for gitflow.

Layers, lowest precedence first:

1. model defaults (``GitflowConfig``)
2. ``~/.gitflow/config.toml``
3. the nearest ``.gitflow/config.toml`` at or above the project path
4. ``GITFLOW_*`` environment variables

Core components never read configuration themselves; callers load a
GitflowConfig here and pass plain values (or use ProcessGateway.from_config).
"""

from __future__ import annotations

import os
import sys
import threading
import warnings
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from pydantic import ValidationError

from .config_schema import GitflowConfig
from .errors import GitflowError
from .observability import log_debug


CONFIG_DIRNAME = ".gitflow"
CONFIG_FILENAME = "config.toml"

# env var -> (section path, key)
ENV_MAPPING: Dict[str, Tuple[List[str], str]] = {
    "GITFLOW_GIT": (["git"], "executable"),
    "GITFLOW_GH": (["git"], "gh_executable"),
    "GITFLOW_CWD": (["git"], "cwd"),
    "GITFLOW_LOG_COUNT": (["log"], "count"),
    "GITFLOW_SYNC_REMOTE": (["sync"], "remote"),
    "GITFLOW_SYNC_PRUNE": (["sync"], "prune"),
    "GITFLOW_SYNC_REBASE": (["sync"], "rebase"),
    "GITFLOW_REBASE_COUNT": (["rebase"], "count"),
    "GITFLOW_LOG_LEVEL": (["logging"], "level"),
    "GITFLOW_LOG_DIR": (["logging"], "dir"),
    "GITFLOW_LOG_MAX_BYTES": (["logging"], "max_bytes"),
    "GITFLOW_LOG_BACKUP_COUNT": (["logging"], "backup_count"),
    "GITFLOW_LOG_DISABLE_FILE": (["logging"], "disable_file"),
}


class ConfigError(GitflowError):
    """Configuration could not be read or did not validate."""


def _get_user_config_dir() -> Path:
    return Path.home() / CONFIG_DIRNAME


def _get_project_config_dir(project_path: Optional[Path] = None) -> Optional[Path]:
    """Nearest ``.gitflow/`` directory at or above ``project_path`` (default: cwd).

    The user-level directory never counts as a project directory.
    """
    start = Path(project_path).resolve() if project_path else Path.cwd()
    user_dir = _get_user_config_dir()
    for candidate in (start, *start.parents):
        config_dir = candidate / CONFIG_DIRNAME
        if config_dir != user_dir and config_dir.is_dir():
            return config_dir
    return None


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {path}: {e}") from e


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Return a new dict with ``override`` layered over ``base``.

    Tables merge key by key; any other value (lists included) replaces.
    """
    merged = dict(base)
    for key, value in override.items():
        below = merged.get(key)
        if isinstance(below, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(below, value)
        else:
            merged[key] = value
    return merged


def _env_layer() -> Dict[str, Any]:
    """Nested dict built from the GITFLOW_* variables that are set.

    Values stay strings; pydantic coerces them during validation.
    """
    layer: Dict[str, Any] = {}
    for env_var, (sections, key) in ENV_MAPPING.items():
        raw = os.environ.get(env_var)
        if raw is None:
            continue
        table = layer
        for section in sections:
            table = table.setdefault(section, {})
        table[key] = raw
    return layer


def _user_layer() -> Dict[str, Any]:
    path = _get_user_config_dir() / CONFIG_FILENAME
    if not path.is_file():
        return {}
    try:
        return _read_toml(path)
    except ConfigError as e:
        # optional layer: warn and continue
        warnings.warn(f"Skipping invalid user config at {path}: {e}", UserWarning)
        return {}


def _project_layer(project_path: Optional[Path]) -> Dict[str, Any]:
    config_dir = _get_project_config_dir(project_path)
    if config_dir is None:
        return {}
    path = config_dir / CONFIG_FILENAME
    if not path.is_file():
        return {}
    try:
        return _read_toml(path)
    except ConfigError as e:
        raise ConfigError(f"Invalid project config: {e}") from e


def load_config(project_path: Optional[Path] = None, skip_env: bool = False) -> GitflowConfig:
    """Merge every layer and validate the result.

    Raises:
        ConfigError: If the project config cannot be parsed, or the merged
            values fail validation
    """
    layers = [_user_layer(), _project_layer(project_path)]
    if not skip_env:
        layers.append(_env_layer())

    merged: Dict[str, Any] = {}
    for layer in layers:
        merged = _deep_merge(merged, layer)

    try:
        return GitflowConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Config validation failed:\n{e}") from e


def get_config_paths(project_path: Optional[Path] = None) -> Dict[str, Optional[Path]]:
    """Where the user and project config files are (or would be) read from."""
    project_dir = _get_project_config_dir(project_path)
    return {
        "user_config": _get_user_config_dir() / CONFIG_FILENAME,
        "project_config": project_dir / CONFIG_FILENAME if project_dir else None,
    }


class _ConfigCache:
    """Last loaded config and the project path it was loaded for."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.config: Optional[GitflowConfig] = None
        self.project: Optional[Path] = None

    def get(self, project_path: Optional[Path], force_reload: bool) -> GitflowConfig:
        key = Path(project_path).resolve() if project_path else None
        with self.lock:
            if force_reload or self.config is None or self.project != key:
                log_debug("Loading gitflow config", project=key)
                self.config = load_config(project_path)
                self.project = key
            return self.config

    def clear(self) -> None:
        with self.lock:
            self.config = None
            self.project = None


_cache = _ConfigCache()


def get_config(project_path: Optional[Path] = None, force_reload: bool = False) -> GitflowConfig:
    """Cached ``load_config``; reloads when the project path changes."""
    return _cache.get(project_path, force_reload)


def clear_config_cache() -> None:
    _cache.clear()
