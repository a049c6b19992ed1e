"""Recognizing merge conflicts in git output."""

from __future__ import annotations

import re
from typing import List

from .errors import ExecutionFailure
from .gateway import ProcessGateway

CONFLICT_PHRASES = (
    "conflict (",
    "automatic merge failed",
    "could not apply",
    "fix conflicts",
    "resolve all conflicts",
    "unmerged",
    "needs merge",
)

_CONFLICT_PATH_RE = re.compile(r"^CONFLICT\s+\(.*?\):\s+.+\s+in\s+(.+)$")


def mentions_conflict(text: str) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in CONFLICT_PHRASES)


def parse_conflicted_paths(text: str) -> List[str]:
    """Paths named by ``CONFLICT (...): ... in <path>`` lines, first-seen order."""
    paths: List[str] = []
    for line in (text or "").splitlines():
        match = _CONFLICT_PATH_RE.match(line.strip())
        if match:
            path = match.group(1).strip()
            if path and path not in paths:
                paths.append(path)
    return paths


async def collect_conflicted_paths(gateway: ProcessGateway) -> List[str]:
    """Ask git for unmerged paths in the working tree, sorted."""
    result = await gateway.git(["diff", "--name-only", "--diff-filter=U"])
    if not result.ok:
        raise ExecutionFailure(result, "diff --name-only --diff-filter=U")
    return sorted({line.strip() for line in result.stdout.splitlines() if line.strip()})
