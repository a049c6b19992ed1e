"""Bisect session tracking."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional

from .errors import ExecutionFailure
from .gateway import CommandResult, ProcessGateway
from .observability import log_action, log_debug
from .staleness import Session, StalenessGuard

_FIRST_BAD_RE = re.compile(r"([0-9a-f]+) is the first bad commit", re.IGNORECASE)


def parse_first_bad(output: str) -> Optional[str]:
    """Return the sha git names as the first bad commit, if any."""
    match = _FIRST_BAD_RE.search(output or "")
    if not match:
        return None
    return match.group(1)


@dataclass
class BisectSession:
    bad_ref: str = ""
    good_ref: str = ""
    active: bool = False
    first_bad: Optional[str] = None


@dataclass(frozen=True)
class BisectStep:
    result: CommandResult
    first_bad: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.first_bad is not None


class BisectTracker:
    """Drives ``git bisect`` and mirrors its state.

    ``state.active`` turns on only after ``start`` succeeds and stays on until
    ``reset``. Results of commands still in flight when ``reset`` is called
    are ignored.
    """

    def __init__(self, gateway: ProcessGateway, *, guard: Optional[StalenessGuard] = None):
        self.gateway = gateway
        self.guard = guard or StalenessGuard()
        self.state = BisectSession()
        self._session: Optional[Session] = None

    @property
    def active(self) -> bool:
        return self.state.active

    async def start(self, bad_ref: str, good_ref: str) -> BisectStep:
        if not bad_ref or not good_ref:
            raise ValueError("start() requires both a bad and a good ref")
        result = await self.gateway.git(["bisect", "start", bad_ref, good_ref])
        log_action("bisect.start", outcome="ok" if result.ok else "error", bad=bad_ref, good=good_ref)
        if not result.ok:
            raise ExecutionFailure(result, "bisect start")
        if self._session is not None:
            self._session.close()
        self._session = Session("bisect", self.guard)
        self.state = BisectSession(bad_ref=bad_ref, good_ref=good_ref, active=True)
        return self._record(result)

    async def good(self, ref: Optional[str] = None) -> Optional[BisectStep]:
        return await self._mark("good", ref)

    async def bad(self, ref: Optional[str] = None) -> Optional[BisectStep]:
        return await self._mark("bad", ref)

    async def run(self, script_path: str) -> Optional[BisectStep]:
        if not script_path:
            raise ValueError("run() requires a script path")
        return await self._step(["bisect", "run", script_path], "bisect run")

    async def _mark(self, verdict: str, ref: Optional[str]) -> Optional[BisectStep]:
        args = ["bisect", verdict]
        if ref:
            args.append(ref)
        return await self._step(args, f"bisect {verdict}")

    async def _step(self, args: List[str], action: str) -> Optional[BisectStep]:
        session = self._session
        if not self.state.active or session is None:
            log_debug("Ignoring bisect command without an active session", action=action)
            return None
        token = session.begin()
        result = await self.gateway.git(args)
        if not session.is_current(token):
            log_debug("Dropping stale bisect result", action=action)
            return None
        log_action(action.replace(" ", "."), outcome="ok" if result.ok else "error")
        if not result.ok:
            raise ExecutionFailure(result, action)
        return self._record(result)

    def _record(self, result: CommandResult) -> BisectStep:
        first_bad = parse_first_bad(result.output)
        if first_bad:
            self.state.first_bad = first_bad
        return BisectStep(result=result, first_bad=first_bad)

    async def reset(self) -> CommandResult:
        """End the search. Local state is cleared even if git reports an error."""
        if self._session is not None:
            self._session.close()
            self._session = None
        self.state = BisectSession()
        result = await self.gateway.git(["bisect", "reset"])
        log_action("bisect.reset", outcome="ok" if result.ok else "error")
        if not result.ok:
            raise ExecutionFailure(result, "bisect reset")
        return result

    async def is_bisecting(self) -> bool:
        result = await self.gateway.git(["bisect", "log"])
        return result.ok
