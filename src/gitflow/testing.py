"""Testing utilities.

ScriptedGateway stands in for the process host: responses are scripted per
argv prefix, every request is recorded, and in manual mode each call stays
in flight until the test releases it, so completions can be delivered in
any order.

Usage:
    gateway = ScriptedGateway()
    gateway.respond("git", "fetch", stdout="")
    gateway.respond("git", "pull", exit_code=1, stderr="CONFLICT (content): Merge conflict in a.txt")

    gateway = ScriptedGateway(manual=True)
    task = asyncio.create_task(view.refresh())
    await gateway.wait_for_calls(1)
    gateway.release("git", "diff")
"""

from __future__ import annotations

import asyncio
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .gateway import CommandRequest, CommandResult, ProcessGateway


@dataclass
class PendingCall:
    request: CommandRequest
    future: "asyncio.Future[CommandResult]"


class ScriptedGateway(ProcessGateway):
    """In-process gateway returning scripted results."""

    def __init__(self, *, manual: bool = False, git_executable: str = "git", gh_executable: str = "gh"):
        super().__init__(git_executable=git_executable, gh_executable=gh_executable)
        self.manual = manual
        self.calls: List[CommandRequest] = []
        self.pending: List[PendingCall] = []
        self._rules: List[Tuple[Tuple[str, ...], List[CommandResult]]] = []

    def respond(
        self,
        *prefix: str,
        exit_code: int = 0,
        stdout: str = "",
        stderr: str = "",
    ) -> "ScriptedGateway":
        """Script a result for argv starting with ``prefix``.

        Repeated calls for the same prefix queue results in order; the last
        one keeps answering once the queue is drained.
        """
        for rule_prefix, results in self._rules:
            if rule_prefix == prefix:
                results.append(CommandResult(argv=prefix, exit_code=exit_code, stdout=stdout, stderr=stderr))
                return self
        self._rules.append(
            (prefix, [CommandResult(argv=prefix, exit_code=exit_code, stdout=stdout, stderr=stderr)])
        )
        return self

    def _result_for(self, request: CommandRequest) -> CommandResult:
        best: Optional[Tuple[Tuple[str, ...], List[CommandResult]]] = None
        for rule in self._rules:
            prefix = rule[0]
            if request.argv[: len(prefix)] == prefix and (best is None or len(prefix) > len(best[0])):
                best = rule
        if best is None:
            return CommandResult(argv=request.argv, exit_code=0)
        results = best[1]
        scripted = results.pop(0) if len(results) > 1 else results[0]
        return CommandResult(
            argv=request.argv,
            exit_code=scripted.exit_code,
            stdout=scripted.stdout,
            stderr=scripted.stderr,
        )

    async def submit(
        self,
        argv: Sequence[str],
        *,
        cwd=None,
        env: Optional[Dict[str, str]] = None,
        stdin: Optional[str] = None,
        on_done: Optional[Callable[[CommandResult], None]] = None,
    ) -> CommandResult:
        if not argv:
            raise ValueError("submit() requires a non-empty argv")
        request = CommandRequest(
            argv=tuple(str(part) for part in argv),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env else None,
            stdin=stdin,
        )
        self.calls.append(request)
        if self.manual:
            future: asyncio.Future[CommandResult] = asyncio.get_running_loop().create_future()
            self.pending.append(PendingCall(request, future))
            result = await future
        else:
            await asyncio.sleep(0)
            result = self._result_for(request)
        if on_done is not None:
            on_done(result)
        return result

    async def wait_for_calls(self, count: int, *, max_spins: int = 1000) -> None:
        """Yield to the loop until ``count`` calls are in flight."""
        for _ in range(max_spins):
            if len(self.pending) >= count:
                return
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} pending calls, saw {len(self.pending)}")

    def release(self, *prefix: str) -> CommandRequest:
        """Complete the oldest in-flight call whose argv starts with ``prefix``."""
        for index, call in enumerate(self.pending):
            if call.request.argv[: len(prefix)] == prefix:
                del self.pending[index]
                call.future.set_result(self._result_for(call.request))
                return call.request
        raise AssertionError(f"no pending call matching {prefix!r}")

    def calls_matching(self, *prefix: str) -> List[CommandRequest]:
        return [call for call in self.calls if call.argv[: len(prefix)] == prefix]

    def called(self, *prefix: str) -> bool:
        return bool(self.calls_matching(*prefix))


@contextmanager
def mock_env_vars(**env_vars):
    """Temporarily set environment variables for testing.

    Setting value to None deletes the var. Originals are restored on exit.
    """
    old_env: Dict[str, Optional[str]] = {}

    try:
        for key, value in env_vars.items():
            old_env[key] = os.environ.get(key)
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = str(value)

        yield

    finally:
        for key, old_value in old_env.items():
            if old_value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old_value
