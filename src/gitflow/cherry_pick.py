"""Cherry-picking commits that exist only on another branch."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from .conflicts import collect_conflicted_paths, mentions_conflict, parse_conflicted_paths
from .errors import ExecutionFailure
from .gateway import CommandResult, ProcessGateway
from .observability import log_action

DEFAULT_COMMIT_COUNT = 50

_COMMIT_RE = re.compile(r"^([0-9a-fA-F]+)\t(.*)$")


@dataclass(frozen=True)
class CherryPickEntry:
    sha: str
    short_sha: str
    summary: str


@dataclass
class CherryPickResult:
    ok: bool
    result: CommandResult
    conflict: bool = False
    conflict_paths: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return self.result.output


def parse_commits(raw: str) -> List[CherryPickEntry]:
    entries: List[CherryPickEntry] = []
    for line in (raw or "").splitlines():
        match = _COMMIT_RE.match(line)
        if match:
            sha, summary = match.groups()
            entries.append(CherryPickEntry(sha=sha, short_sha=sha[:7], summary=summary))
    return entries


def parse_branches(raw: str, current: Optional[str] = None) -> List[str]:
    """Candidate source branches, without the current one or symbolic refs."""
    branches: List[str] = []
    for line in (raw or "").splitlines():
        name = line.strip()
        if name.startswith("* "):
            name = name[2:].strip()
        if not name or name == current:
            continue
        if name.endswith("/HEAD") or name.startswith("(HEAD"):
            continue
        branches.append(name)
    return branches


async def list_branches(gateway: ProcessGateway) -> List[str]:
    head = await gateway.git(["rev-parse", "--abbrev-ref", "HEAD"])
    if not head.ok:
        raise ExecutionFailure(head, "rev-parse --abbrev-ref HEAD")
    listing = await gateway.git(["branch", "--all", "--format=%(refname:short)"])
    if not listing.ok:
        raise ExecutionFailure(listing, "branch --all")
    return parse_branches(listing.stdout, head.stdout.strip())


def list_unique_commits_args(source: str, count: int = DEFAULT_COMMIT_COUNT) -> List[str]:
    args = ["log", "--cherry-pick", "--right-only", "--no-merges", "--pretty=format:%H%x09%h %s"]
    if count > 0:
        args.append(f"-n{count}")
    args.append(f"HEAD...{source}")
    return args


async def list_unique_commits(
    gateway: ProcessGateway,
    source: str,
    count: int = DEFAULT_COMMIT_COUNT,
) -> List[CherryPickEntry]:
    """Commits on ``source`` whose changes are not on the current branch."""
    if not source:
        raise ValueError("list_unique_commits() requires a source branch")
    result = await gateway.git(list_unique_commits_args(source, count))
    if not result.ok:
        raise ExecutionFailure(result, "log --cherry-pick")
    return parse_commits(result.stdout)


async def cherry_pick(gateway: ProcessGateway, sha: str) -> CherryPickResult:
    """Apply one commit. Conflicts are reported in the result; other failures raise."""
    if not sha:
        raise ValueError("cherry_pick() requires a sha")
    result = await gateway.git(["cherry-pick", sha])
    if result.ok:
        log_action("cherry_pick", sha=sha)
        return CherryPickResult(ok=True, result=result)
    if not mentions_conflict(result.output):
        log_action("cherry_pick", outcome="error", sha=sha)
        raise ExecutionFailure(result, "cherry-pick")
    paths = parse_conflicted_paths(result.output) or await collect_conflicted_paths(gateway)
    log_action("cherry_pick", outcome="conflict", sha=sha, paths=paths)
    return CherryPickResult(ok=False, result=result, conflict=True, conflict_paths=paths)
