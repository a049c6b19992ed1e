"""Fetch, pull, ahead check, push.

SyncPipeline runs the four steps strictly in order, one per ``advance()``.
A failed step halts the pipeline; a pull that fails with conflict vocabulary
is recorded as a conflict and handed to ``on_conflict``. When nothing is
ahead of upstream the push is skipped, which still counts as success.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from .conflicts import collect_conflicted_paths, mentions_conflict, parse_conflicted_paths
from .errors import ExecutionFailure, GitflowError
from .gateway import CommandResult, ProcessGateway
from .observability import log_debug, log_warning, timeit
from .staleness import Session, StalenessGuard

NO_UPSTREAM_PHRASES = (
    "no upstream configured",
    "no upstream",
    "does not point to a branch",
    "has no upstream branch",
)


class SyncStepKind(str, Enum):
    FETCH = "fetch"
    PULL = "pull"
    AHEAD_CHECK = "ahead_check"
    PUSH = "push"


class SyncOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


@dataclass
class SyncStep:
    kind: SyncStepKind
    outcome: SyncOutcome = SyncOutcome.PENDING
    message: str = ""
    ahead_count: Optional[int] = None
    result: Optional[CommandResult] = None

    @property
    def done(self) -> bool:
        return self.outcome is not SyncOutcome.PENDING


@dataclass
class SyncResult:
    ok: bool
    steps: List[SyncStep]
    conflict_paths: List[str] = field(default_factory=list)
    message: str = ""


@dataclass(frozen=True)
class AheadStatus:
    ahead: bool
    count: int


def _failure_message(result: CommandResult, action: str) -> str:
    return result.output or f"git {action} failed"


def mentions_no_upstream(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in NO_UPSTREAM_PHRASES)


async def ahead_check(gateway: ProcessGateway) -> AheadStatus:
    """Count local commits missing upstream.

    Detached HEAD and branches without an upstream are reported as not ahead.
    """
    head = await gateway.git(["rev-parse", "--abbrev-ref", "HEAD"])
    if not head.ok:
        raise ExecutionFailure(head, "rev-parse --abbrev-ref HEAD")
    branch = head.stdout.strip()
    if not branch or branch == "HEAD":
        return AheadStatus(ahead=False, count=0)

    upstream = await gateway.git(["rev-parse", "--abbrev-ref", "--symbolic-full-name", "@{upstream}"])
    if not upstream.ok:
        if mentions_no_upstream(upstream.output):
            return AheadStatus(ahead=False, count=0)
        raise ExecutionFailure(upstream, "rev-parse @{upstream}")

    counted = await gateway.git(["rev-list", "--count", "@{upstream}..HEAD"])
    if not counted.ok:
        raise ExecutionFailure(counted, "rev-list --count @{upstream}..HEAD")
    text = counted.stdout.strip()
    try:
        count = int(text)
    except ValueError:
        raise GitflowError(f"Could not parse ahead count from '{text}'") from None
    return AheadStatus(ahead=count > 0, count=count)


class SyncPipeline:
    """Step-at-a-time sync state machine."""

    ORDER: Sequence[SyncStepKind] = (
        SyncStepKind.FETCH,
        SyncStepKind.PULL,
        SyncStepKind.AHEAD_CHECK,
        SyncStepKind.PUSH,
    )

    def __init__(
        self,
        gateway: ProcessGateway,
        *,
        remote: Optional[str] = None,
        prune: bool = True,
        rebase: bool = False,
        on_conflict: Optional[Callable[[List[str], str], None]] = None,
        on_step: Optional[Callable[[SyncStep], None]] = None,
        guard: Optional[StalenessGuard] = None,
    ):
        self.gateway = gateway
        self.remote = remote
        self.prune = prune
        self.rebase = rebase
        self.on_conflict = on_conflict
        self.on_step = on_step
        self.session = Session("sync", guard)
        self.steps: List[SyncStep] = [SyncStep(kind) for kind in self.ORDER]
        self.conflict_paths: List[str] = []
        self._running: Optional[SyncStep] = None

    def step(self, kind: SyncStepKind) -> SyncStep:
        return self.steps[self.ORDER.index(kind)]

    @property
    def halted(self) -> bool:
        return any(s.outcome in (SyncOutcome.FAILED, SyncOutcome.CONFLICT) for s in self.steps)

    @property
    def next_step(self) -> Optional[SyncStep]:
        if self.halted:
            return None
        for step in self.steps:
            if not step.done:
                return step
        return None

    @property
    def running(self) -> bool:
        """True while a step's command is in flight."""
        return self._running is not None

    @property
    def finished(self) -> bool:
        return self.next_step is None

    def cancel(self) -> None:
        """Drop the results of any step still in flight."""
        self.session.close()

    async def advance(self) -> Optional[SyncStep]:
        """Run exactly the next pending step. Returns it, or None if nothing ran.

        Steps never overlap: while one is in flight, further calls return None
        without spawning anything.
        """
        step = self.next_step
        if step is None or not self.session.is_open:
            return None
        if self._running is not None:
            log_debug("Sync step already running", step=self._running.kind.value)
            return None
        self._running = step
        try:
            return await self._run_step(step)
        finally:
            self._running = None

    async def _run_step(self, step: SyncStep) -> Optional[SyncStep]:
        token = self.session.begin(step.kind)
        handler = {
            SyncStepKind.FETCH: self._fetch,
            SyncStepKind.PULL: self._pull,
            SyncStepKind.AHEAD_CHECK: self._ahead_check,
            SyncStepKind.PUSH: self._push,
        }[step.kind]

        with timeit(f"sync.{step.kind.value}") as info:
            update = await handler()
            if not self.session.is_current(token):
                info["outcome"] = "stale"
                log_debug("Dropping stale sync step", step=step.kind.value)
                return None
            self.session.apply(token, update, step)
            info["outcome"] = step.outcome.value

        if self.on_step is not None:
            self.on_step(step)
        if step.outcome is SyncOutcome.CONFLICT and self.on_conflict is not None:
            self.on_conflict(list(self.conflict_paths), step.message)
        return step

    async def run(self) -> SyncResult:
        while not self.finished and self.session.is_open:
            if await self.advance() is None:
                break
        return self.result()

    def result(self) -> SyncResult:
        ok = all(s.outcome in (SyncOutcome.SUCCESS, SyncOutcome.SKIPPED) for s in self.steps)
        message = ""
        for step in self.steps:
            if step.outcome in (SyncOutcome.FAILED, SyncOutcome.CONFLICT):
                message = step.message
                break
        else:
            if ok:
                push = self.step(SyncStepKind.PUSH)
                message = "Sync complete" if push.outcome is SyncOutcome.SUCCESS else "Sync complete; nothing to push"
        return SyncResult(ok=ok, steps=list(self.steps), conflict_paths=list(self.conflict_paths), message=message)

    def _remote_args(self) -> List[str]:
        return [self.remote] if self.remote else []

    async def _fetch(self):
        args = ["fetch"]
        if self.prune:
            args.append("--prune")
        result = await self.gateway.git(args + self._remote_args())

        def update(step: SyncStep) -> None:
            step.result = result
            if result.ok:
                step.outcome = SyncOutcome.SUCCESS
                step.message = result.output
            else:
                step.outcome = SyncOutcome.FAILED
                step.message = _failure_message(result, "fetch")

        return update

    async def _pull(self):
        args = ["pull"]
        if self.rebase:
            args.append("--rebase")
        result = await self.gateway.git(args + self._remote_args())
        paths: List[str] = []
        conflict = not result.ok and mentions_conflict(result.output)
        if conflict:
            paths = parse_conflicted_paths(result.output)
            if not paths:
                try:
                    paths = await collect_conflicted_paths(self.gateway)
                except ExecutionFailure as exc:
                    log_warning("Could not list conflicted paths", error=exc.diagnostic)

        def update(step: SyncStep) -> None:
            step.result = result
            if result.ok:
                step.outcome = SyncOutcome.SUCCESS
                step.message = result.output
            elif conflict:
                step.outcome = SyncOutcome.CONFLICT
                step.message = _failure_message(result, "pull")
                self.conflict_paths = paths
            else:
                step.outcome = SyncOutcome.FAILED
                step.message = _failure_message(result, "pull")

        return update

    async def _ahead_check(self):
        try:
            status = await ahead_check(self.gateway)
            error: Optional[GitflowError] = None
        except GitflowError as exc:
            status, error = None, exc

        def update(step: SyncStep) -> None:
            if status is None:
                step.outcome = SyncOutcome.FAILED
                step.message = str(error)
                if isinstance(error, ExecutionFailure):
                    step.result = error.result
                return
            step.outcome = SyncOutcome.SUCCESS
            step.ahead_count = status.count
            step.message = f"{status.count} commit(s) ahead of upstream"
            if not status.ahead:
                push = self.step(SyncStepKind.PUSH)
                push.outcome = SyncOutcome.SKIPPED
                push.message = "Nothing to push"

        return update

    async def _push(self):
        result = await self.gateway.git(["push"] + self._remote_args())

        def update(step: SyncStep) -> None:
            step.result = result
            if result.ok:
                step.outcome = SyncOutcome.SUCCESS
                step.message = result.output
            else:
                step.outcome = SyncOutcome.FAILED
                step.message = _failure_message(result, "push")

        return update
