"""Configuration schema for gitflow.

Defines all configuration options with types, defaults, and validation.
Uses Pydantic for schema enforcement and clear error messages.
"""

from __future__ import annotations

import shutil
import warnings
from pathlib import Path
from typing import Dict, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GitConfig(BaseModel):
    """External executables and working directory."""

    executable: str = Field(
        default="git",
        description="git executable name or path",
    )
    gh_executable: str = Field(
        default="gh",
        description="GitHub CLI executable name or path",
    )
    cwd: str = Field(
        default="",
        description="Working directory for commands (empty = process cwd)",
    )

    @field_validator("executable", "gh_executable")
    @classmethod
    def validate_executable(cls, v: str) -> str:
        """Warn if the executable cannot be found on PATH."""
        if not v.strip():
            raise ValueError("executable cannot be empty")
        if shutil.which(v) is None and not Path(v).expanduser().exists():
            warnings.warn(f"Executable not found: {v}", UserWarning)
        return v

    @field_validator("cwd")
    @classmethod
    def validate_cwd(cls, v: str) -> str:
        if v:
            path = Path(v).expanduser()
            if not path.is_dir():
                warnings.warn(f"Working directory does not exist: {v}", UserWarning)
        return v


class LogConfig(BaseModel):
    """Commit list settings."""

    count: int = Field(
        default=50,
        ge=1,
        description="Number of commits to list",
    )


class SyncConfig(BaseModel):
    """Sync pipeline settings."""

    remote: str = Field(
        default="",
        description="Remote passed to fetch/pull/push (empty = git default)",
    )
    prune: bool = Field(
        default=True,
        description="Prune deleted remote branches on fetch",
    )
    rebase: bool = Field(
        default=False,
        description="Pull with --rebase",
    )


class RebaseConfig(BaseModel):
    """Interactive rebase settings."""

    count: int = Field(
        default=50,
        ge=0,
        description="Maximum commits loaded into the todo list (0 = no limit)",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level",
    )
    dir: str = Field(
        default="",
        description="Log directory (empty = ~/.gitflow/logs)",
    )
    max_bytes: int = Field(
        default=10485760,  # 10MB
        ge=0,
        description="Maximum log file size in bytes",
    )
    backup_count: int = Field(
        default=5,
        ge=0,
        description="Number of backup log files to keep",
    )
    disable_file: bool = Field(
        default=False,
        description="Disable file logging (stderr only)",
    )

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v):
        return v.upper() if isinstance(v, str) else v

    def as_env(self) -> Dict[str, str]:
        """Environment variables understood by gitflow.observability."""
        env = {
            "GITFLOW_LOG_LEVEL": self.level,
            "GITFLOW_LOG_MAX_BYTES": str(self.max_bytes),
            "GITFLOW_LOG_BACKUP_COUNT": str(self.backup_count),
        }
        if self.dir:
            env["GITFLOW_LOG_DIR"] = str(Path(self.dir).expanduser())
        if self.disable_file:
            env["GITFLOW_LOG_DISABLE_FILE"] = "1"
        return env


class GitflowConfig(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(extra="ignore")

    version: int = Field(
        default=1,
        ge=1,
        description="Config schema version",
    )

    git: GitConfig = Field(default_factory=GitConfig)
    log: LogConfig = Field(default_factory=LogConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    rebase: RebaseConfig = Field(default_factory=RebaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> "GitflowConfig":
        """Create config with all defaults."""
        return cls()
