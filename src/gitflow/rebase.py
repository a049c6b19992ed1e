"""Interactive rebase todo model.

Entries are loaded oldest first from ``git log --reverse``, edited in memory
(action changes and adjacent swaps), then serialized to a todo script that
replaces the one git generates. Execution points ``GIT_SEQUENCE_EDITOR`` at a
copy command so git never opens an editor.
"""

from __future__ import annotations

import os
import shlex
import sys
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional

from .conflicts import collect_conflicted_paths, mentions_conflict, parse_conflicted_paths
from .errors import ExecutionFailure, InvalidActionError
from .gateway import CommandResult, ProcessGateway
from .observability import log_action, log_debug, log_warning
from .staleness import Session, StalenessGuard

DEFAULT_COMMIT_COUNT = 50


class RebaseAction(str, Enum):
    PICK = "pick"
    REWORD = "reword"
    EDIT = "edit"
    SQUASH = "squash"
    FIXUP = "fixup"
    DROP = "drop"

    @classmethod
    def parse(cls, value: "RebaseAction | str") -> "RebaseAction":
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(action.value for action in cls)
            raise InvalidActionError(f"Invalid rebase action {value!r}; expected one of: {allowed}") from None


_ACTION_CYCLE = list(RebaseAction)


def cycle_action(action: RebaseAction | str) -> RebaseAction:
    """Next action in pick, reword, edit, squash, fixup, drop order, wrapping."""
    current = RebaseAction.parse(action)
    return _ACTION_CYCLE[(_ACTION_CYCLE.index(current) + 1) % len(_ACTION_CYCLE)]


@dataclass
class RebaseEntry:
    sha: str
    subject: str
    action: RebaseAction = RebaseAction.PICK
    short_sha: str = ""

    def __post_init__(self) -> None:
        self.action = RebaseAction.parse(self.action)
        if not self.short_sha:
            self.short_sha = self.sha[:7]


def parse_commits(raw: str) -> List[RebaseEntry]:
    """Parse ``<sha>\\t<subject>`` lines. Lines without a hex sha are skipped."""
    entries: List[RebaseEntry] = []
    for line in (raw or "").splitlines():
        if not line.strip():
            continue
        sha, _, subject = line.partition("\t")
        sha = sha.strip()
        if not sha or any(ch not in "0123456789abcdefABCDEF" for ch in sha):
            continue
        entries.append(RebaseEntry(sha=sha, subject=subject))
    return entries


def build_todo(entries: Iterable[RebaseEntry]) -> str:
    """One ``<action> <full sha> <subject>`` line per entry, in list order."""
    lines = [f"{entry.action.value} {entry.sha} {entry.subject}" for entry in entries]
    return "\n".join(lines) + "\n" if lines else ""


def list_commits_args(base_ref: str, count: int = DEFAULT_COMMIT_COUNT) -> List[str]:
    args = ["log", "--pretty=format:%H%x09%s", "--reverse"]
    if count > 0:
        args.append(f"-n{count}")
    args.append(f"{base_ref}..HEAD")
    return args


@dataclass
class RebaseTodo:
    entries: List[RebaseEntry] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.entries)

    def _entry(self, index: int) -> RebaseEntry:
        if index < 0 or index >= len(self.entries):
            raise IndexError("Rebase entry index out of range")
        return self.entries[index]

    def set_action(self, index: int, action: RebaseAction | str) -> RebaseEntry:
        parsed = RebaseAction.parse(action)
        entry = self._entry(index)
        entry.action = parsed
        return entry

    def cycle_action(self, index: int) -> RebaseEntry:
        entry = self._entry(index)
        entry.action = cycle_action(entry.action)
        return entry

    def swap(self, first: int, second: int) -> None:
        if abs(first - second) != 1:
            raise ValueError("Only adjacent entries can be swapped")
        if min(first, second) < 0 or max(first, second) >= len(self.entries):
            raise IndexError("Rebase entry index out of range")
        self.entries[first], self.entries[second] = self.entries[second], self.entries[first]

    def move_up(self, index: int) -> int:
        """Move an entry one position earlier. Returns its new index."""
        if index <= 0 or index >= len(self.entries):
            return index
        self.swap(index - 1, index)
        return index - 1

    def move_down(self, index: int) -> int:
        if index < 0 or index >= len(self.entries) - 1:
            return index
        self.swap(index, index + 1)
        return index + 1

    def to_text(self) -> str:
        return build_todo(self.entries)


@dataclass
class RebaseOutcome:
    ok: bool
    result: CommandResult
    conflict: bool = False
    conflict_paths: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return self.result.output


def _sequence_editor(todo_path: str) -> str:
    if sys.platform == "win32":
        return f'copy /Y "{todo_path}"'
    return f"cp {shlex.quote(todo_path)}"


def _editor_env(editor: Optional[str]) -> Dict[str, str]:
    return {"GIT_EDITOR": editor} if editor else {}


class RebaseSession:
    """One interactive rebase onto ``base_ref``, from load to completion."""

    def __init__(
        self,
        gateway: ProcessGateway,
        base_ref: str,
        *,
        count: int = DEFAULT_COMMIT_COUNT,
        guard: Optional[StalenessGuard] = None,
    ):
        if not base_ref or not base_ref.strip():
            raise ValueError("base_ref is required")
        self.gateway = gateway
        self.base_ref = base_ref.strip()
        self.count = count
        self.session = Session(f"rebase:{self.base_ref}", guard)
        self.todo = RebaseTodo()
        self.in_progress = False
        self.conflict_paths: List[str] = []

    @property
    def is_open(self) -> bool:
        return self.session.is_open

    @property
    def entries(self) -> List[RebaseEntry]:
        return self.todo.entries

    async def load(self) -> bool:
        if not self.session.is_open:
            return False
        token = self.session.begin(self.base_ref)
        result = await self.gateway.git(list_commits_args(self.base_ref, self.count))
        if not self.session.is_current(token):
            log_debug("Dropping stale rebase commit list", base_ref=self.base_ref)
            return False
        if not result.ok:
            raise ExecutionFailure(result, "log")
        entries = parse_commits(result.stdout)
        if self.count > 0 and len(entries) >= self.count:
            log_warning("Rebase commit list hit the count limit", base_ref=self.base_ref, count=self.count)
        self.session.apply(token, self._set_entries, entries)
        return True

    def _set_entries(self, entries: List[RebaseEntry]) -> None:
        self.todo = RebaseTodo(entries)

    def set_action(self, index: int, action: RebaseAction | str) -> Optional[RebaseEntry]:
        parsed = RebaseAction.parse(action)
        if not self.session.is_open:
            return None
        return self.todo.set_action(index, parsed)

    def cycle_action(self, index: int) -> Optional[RebaseEntry]:
        if not self.session.is_open:
            return None
        return self.todo.cycle_action(index)

    def move_up(self, index: int) -> int:
        if not self.session.is_open:
            return index
        return self.todo.move_up(index)

    def move_down(self, index: int) -> int:
        if not self.session.is_open:
            return index
        return self.todo.move_down(index)

    async def execute(self, editor: Optional[str] = None) -> Optional[RebaseOutcome]:
        """Run ``git rebase -i`` with the edited todo. Closes the session on success.

        Only the todo editor is replaced. ``reword`` and ``squash`` still open
        git's commit message editor; pass ``editor`` to set ``GIT_EDITOR`` for
        this run (``"true"`` keeps every message unchanged, which turns a
        reword into a plain pick).
        """
        if not self.session.is_open or not self.todo.entries:
            return None
        handle = tempfile.NamedTemporaryFile("w", suffix=".gitflow-todo", delete=False, encoding="utf-8")
        try:
            with handle:
                handle.write(self.todo.to_text())
            env = _editor_env(editor)
            env["GIT_SEQUENCE_EDITOR"] = _sequence_editor(handle.name)
            result = await self.gateway.git(["rebase", "-i", self.base_ref], env=env)
        finally:
            try:
                os.unlink(handle.name)
            except OSError:
                log_debug("Could not remove rebase todo file", path=handle.name)
        return await self._finish(result, "rebase -i", "execute")

    async def continue_(self, editor: Optional[str] = None) -> Optional[RebaseOutcome]:
        if not self.in_progress:
            return None
        result = await self.gateway.git(["rebase", "--continue"], env=_editor_env(editor) or None)
        return await self._finish(result, "rebase --continue", "continue")

    async def abort(self) -> CommandResult:
        result = await self.gateway.git(["rebase", "--abort"])
        log_action("rebase.abort", outcome="ok" if result.ok else "error", base_ref=self.base_ref)
        if not result.ok:
            raise ExecutionFailure(result, "rebase --abort")
        self.in_progress = False
        self.conflict_paths = []
        self.close()
        return result

    async def _finish(self, result: CommandResult, action: str, step: str) -> RebaseOutcome:
        if result.ok and "Stopped at" in result.output:
            log_action(f"rebase.{step}", outcome="stopped", base_ref=self.base_ref)
            self.in_progress = True
            return RebaseOutcome(ok=True, result=result)
        if result.ok:
            log_action(f"rebase.{step}", base_ref=self.base_ref)
            self.in_progress = False
            self.conflict_paths = []
            self.close()
            return RebaseOutcome(ok=True, result=result)

        if not mentions_conflict(result.output):
            log_action(f"rebase.{step}", outcome="error", base_ref=self.base_ref)
            raise ExecutionFailure(result, action)

        paths = parse_conflicted_paths(result.output)
        if not paths:
            paths = await collect_conflicted_paths(self.gateway)
        self.in_progress = True
        self.conflict_paths = paths
        log_action(f"rebase.{step}", outcome="conflict", base_ref=self.base_ref, paths=paths)
        return RebaseOutcome(ok=False, result=result, conflict=True, conflict_paths=paths)

    def close(self) -> None:
        self.session.close()
