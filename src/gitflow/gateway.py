"""Process execution gateway.

Every git/gh invocation in gitflow goes through ProcessGateway.submit():

- The blocking spawn runs in a worker thread (asyncio.to_thread), so the
  caller's event loop never blocks.
- stdout and stderr are captured as text; a non-zero exit is returned as
  data, never raised. Callers classify failures themselves.
- Exactly one process per call. No retries, no timeouts: both belong to the
  caller.
- An optional ``on_done`` callback runs on the event loop thread after the
  process finishes, so callbacks never run in parallel with each other.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, Optional, Sequence, Tuple

from git import Repo
from git.exc import InvalidGitRepositoryError, NoSuchPathError

from .errors import GitflowError
from .observability import log_debug, log_error

if TYPE_CHECKING:
    from .config_schema import GitflowConfig


SPAWN_FAILURE_EXIT_CODE = 127


@dataclass(frozen=True)
class CommandRequest:
    """One external invocation, created per call."""

    argv: Tuple[str, ...]
    cwd: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    stdin: Optional[str] = None


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of a CommandRequest."""

    argv: Tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """Trimmed stdout and stderr, joined when both are present."""
        stdout = (self.stdout or "").strip()
        stderr = (self.stderr or "").strip()
        return "\n".join(part for part in (stdout, stderr) if part)


def _preview(text: str) -> str:
    lines = (text or "").strip().splitlines()
    return lines[0][:160] if lines else ""


class ProcessGateway:
    """Asynchronous front door to the process host."""

    def __init__(
        self,
        *,
        cwd: Optional[Path | str] = None,
        git_executable: str = "git",
        gh_executable: str = "gh",
        env: Optional[Dict[str, str]] = None,
    ):
        self.cwd = str(cwd) if cwd else None
        self.git_executable = git_executable
        self.gh_executable = gh_executable
        self._base_env = dict(env or {})

    @classmethod
    def from_config(cls, config: "GitflowConfig") -> "ProcessGateway":
        return cls(
            cwd=config.git.cwd or None,
            git_executable=config.git.executable,
            gh_executable=config.git.gh_executable,
        )

    def _build_env(self, extra: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if not self._base_env and not extra:
            return None
        env = os.environ.copy()
        env.update(self._base_env)
        env.update(extra or {})
        return env

    def _execute(self, request: CommandRequest) -> CommandResult:
        """Spawn the process and block until it exits. Runs in a worker thread."""
        quoted = " ".join(shlex.quote(part) for part in request.argv)
        cwd = request.cwd or self.cwd
        log_debug(f"RUN cwd={cwd or os.getcwd()} cmd={quoted}")
        start = time.perf_counter()
        try:
            completed = subprocess.run(
                list(request.argv),
                cwd=cwd,
                env=self._build_env(request.env),
                input=request.stdin,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                close_fds=sys.platform == "win32",
            )
        except OSError as exc:
            log_error("Failed to start command", cmd=quoted, error=str(exc))
            return CommandResult(
                argv=request.argv,
                exit_code=SPAWN_FAILURE_EXIT_CODE,
                stdout="",
                stderr=f"Failed to start command: {quoted}",
            )

        elapsed = time.perf_counter() - start
        stdout = completed.stdout or ""
        stderr = completed.stderr or ""
        log_debug(
            f"DONE rc={completed.returncode} elapsed={elapsed:.2f}s "
            f"stdout='{_preview(stdout)}' stderr='{_preview(stderr)}'"
        )
        return CommandResult(
            argv=request.argv,
            exit_code=completed.returncode,
            stdout=stdout,
            stderr=stderr,
        )

    async def submit(
        self,
        argv: Sequence[str],
        *,
        cwd: Optional[Path | str] = None,
        env: Optional[Dict[str, str]] = None,
        stdin: Optional[str] = None,
        on_done: Optional[Callable[[CommandResult], None]] = None,
    ) -> CommandResult:
        """Run one command out-of-line and return its captured result."""
        if not argv:
            raise ValueError("submit() requires a non-empty argv")
        request = CommandRequest(
            argv=tuple(str(part) for part in argv),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env else None,
            stdin=stdin,
        )
        result = await asyncio.to_thread(self._execute, request)
        if on_done is not None:
            on_done(result)
        return result

    async def git(self, args: Sequence[str], **kwargs) -> CommandResult:
        return await self.submit([self.git_executable, *args], **kwargs)

    async def gh(self, args: Sequence[str], **kwargs) -> CommandResult:
        return await self.submit([self.gh_executable, *args], **kwargs)

    def spawn(self, argv: Sequence[str], **kwargs) -> "asyncio.Task[CommandResult]":
        """Schedule submit() without awaiting it. Must be called from a running loop."""
        return asyncio.get_running_loop().create_task(self.submit(argv, **kwargs))


def resolve_repo_root(path: Optional[Path | str] = None) -> Path:
    """Return the working tree root enclosing ``path`` (default: cwd)."""
    target = Path(path) if path else Path.cwd()
    try:
        repo = Repo(target, search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError) as exc:
        raise GitflowError(f"Not a git repository: {target}") from exc
    if repo.working_tree_dir is None:
        raise GitflowError(f"Repository has no working tree: {target}")
    return Path(repo.working_tree_dir)
