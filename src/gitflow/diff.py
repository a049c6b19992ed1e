"""Unified diff parsing.

``collect_markers`` turns diff text into file markers, hunk markers and a
per-line map of old/new line numbers, keyed by displayed line. Displayed
lines are 1-based and shifted by ``offset`` so the diff can be rendered below
other content in the same view.

Hunk bodies are bounded by the spans in their ``@@`` header: while either
span has lines left, every line is content and is classified only by its
first character. Lines such as ``--- removed`` or ``+++ added`` inside a
body are therefore never mistaken for file headers.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, NamedTuple, Optional, Sequence, Tuple

from .errors import ExecutionFailure
from .gateway import ProcessGateway
from .observability import log_debug, timeit
from .staleness import Session, StalenessGuard

_HUNK_RE = re.compile(r"^@@+ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
_GIT_HEADER_RE = re.compile(r"^diff --git a/(.+) b/(.+)$")

DEV_NULL = "/dev/null"


class DiffFileStatus(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class LineKind(str, Enum):
    ADDED = "added"
    DELETED = "deleted"
    CONTEXT = "context"


@dataclass(frozen=True)
class HunkRange:
    old_start: int
    old_count: int
    new_start: int
    new_count: int


@dataclass
class DiffFileMarker:
    path: str
    status: DiffFileStatus
    displayed_line: int
    old_path: Optional[str] = None


@dataclass
class DiffHunkMarker:
    old_start: int
    new_start: int
    displayed_line: int
    old_count: int = 1
    new_count: int = 1
    header: str = ""
    path: Optional[str] = None


@dataclass(frozen=True)
class LineContext:
    old_line: Optional[int]
    new_line: Optional[int]
    kind: LineKind
    path: Optional[str] = None
    hunk: int = 0


class DiffMarkers(NamedTuple):
    files: List[DiffFileMarker]
    hunks: List[DiffHunkMarker]
    line_context: Dict[int, LineContext]


@dataclass
class DiffFileSummary:
    header: str
    old_path: Optional[str] = None
    new_path: Optional[str] = None
    hunks: List[str] = field(default_factory=list)


def split_lines(text: str) -> List[str]:
    """Split on newlines only, dropping the empty tail after a final newline."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def parse_hunk_range(line: str) -> Optional[HunkRange]:
    """Parse ``@@ -a,b +c,d @@``. A missing count means a span of 1.

    Returns None when the line is not a well-formed hunk header.
    """
    match = _HUNK_RE.match(line)
    if not match:
        return None
    old_start, old_count, new_start, new_count = match.groups()
    return HunkRange(
        old_start=int(old_start),
        old_count=int(old_count) if old_count is not None else 1,
        new_start=int(new_start),
        new_count=int(new_count) if new_count is not None else 1,
    )


def parse_hunk_header(line: str) -> Tuple[int, int]:
    """Return ``(old_start, new_start)``; malformed headers give ``(0, 0)``."""
    hunk = parse_hunk_range(line)
    if hunk is None:
        return 0, 0
    return hunk.old_start, hunk.new_start


def _strip_path(raw: str) -> str:
    # plain diffs may append a tab and a timestamp
    path = raw.split("\t", 1)[0].strip()
    if path.startswith(("a/", "b/")):
        return path[2:]
    return path


def _git_header_paths(line: str) -> Tuple[Optional[str], Optional[str]]:
    match = _GIT_HEADER_RE.match(line)
    if not match:
        return None, None
    return match.group(1), match.group(2)


def collect_markers(lines: Sequence[str], offset: int = 0) -> DiffMarkers:
    """Single forward pass over diff lines. See module docstring."""
    files: List[DiffFileMarker] = []
    hunks: List[DiffHunkMarker] = []
    line_context: Dict[int, LineContext] = {}

    current: Optional[DiffFileMarker] = None
    in_header = False
    old_cursor = new_cursor = 0
    old_left = new_left = 0
    open_ended = False

    for index, line in enumerate(lines):
        displayed = offset + index + 1
        in_body = old_left > 0 or new_left > 0
        if open_ended and (line.startswith("diff --git ") or line.startswith("@@")):
            open_ended = False

        if in_body or open_ended:
            if line.startswith("\\"):
                continue
            path = current.path if current else None
            hunk_index = len(hunks) - 1
            if line.startswith("+"):
                line_context[displayed] = LineContext(None, new_cursor, LineKind.ADDED, path, hunk_index)
                new_cursor += 1
                new_left -= 1
            elif line.startswith("-"):
                line_context[displayed] = LineContext(old_cursor, None, LineKind.DELETED, path, hunk_index)
                old_cursor += 1
                old_left -= 1
            else:
                line_context[displayed] = LineContext(
                    old_cursor, new_cursor, LineKind.CONTEXT, path, hunk_index
                )
                old_cursor += 1
                new_cursor += 1
                old_left -= 1
                new_left -= 1
            old_left = max(old_left, 0)
            new_left = max(new_left, 0)
            continue

        if line.startswith("diff --git "):
            old_path, new_path = _git_header_paths(line)
            current = DiffFileMarker(
                path=new_path or line[len("diff --git "):].strip(),
                status=DiffFileStatus.MODIFIED,
                displayed_line=displayed,
                old_path=old_path,
            )
            files.append(current)
            in_header = True
            continue

        if line.startswith("@@"):
            hunk = parse_hunk_range(line)
            if hunk is None:
                log_debug("Malformed hunk header", line=line, displayed_line=displayed)
                hunk = HunkRange(0, 0, 0, 0)
                open_ended = True
            hunks.append(
                DiffHunkMarker(
                    old_start=hunk.old_start,
                    new_start=hunk.new_start,
                    displayed_line=displayed,
                    old_count=hunk.old_count,
                    new_count=hunk.new_count,
                    header=line,
                    path=current.path if current else None,
                )
            )
            old_cursor, new_cursor = hunk.old_start, hunk.new_start
            old_left, new_left = hunk.old_count, hunk.new_count
            in_header = False
            continue

        if line.startswith("--- "):
            next_line = lines[index + 1] if index + 1 < len(lines) else ""
            if not in_header and next_line.startswith("+++ "):
                # plain unified diff without a "diff --git" line
                current = DiffFileMarker(
                    path=_strip_path(next_line[4:]),
                    status=DiffFileStatus.MODIFIED,
                    displayed_line=displayed,
                )
                files.append(current)
                in_header = True
            if current is not None and in_header:
                old_path = _strip_path(line[4:])
                if old_path == DEV_NULL:
                    current.status = DiffFileStatus.ADDED
                else:
                    current.old_path = old_path
            continue

        if current is None or not in_header:
            continue

        if line.startswith("+++ "):
            new_path = _strip_path(line[4:])
            if new_path == DEV_NULL:
                current.status = DiffFileStatus.DELETED
                current.path = current.old_path or current.path
            else:
                current.path = new_path
        elif line.startswith("new file mode"):
            current.status = DiffFileStatus.ADDED
        elif line.startswith("deleted file mode"):
            current.status = DiffFileStatus.DELETED
        elif line.startswith("rename from "):
            current.status = DiffFileStatus.RENAMED
            current.old_path = line[len("rename from "):].strip()
        elif line.startswith("rename to "):
            current.status = DiffFileStatus.RENAMED
            current.path = line[len("rename to "):].strip()
        elif line.startswith("similarity index"):
            current.status = DiffFileStatus.RENAMED

    return DiffMarkers(files, hunks, line_context)


def hunk_ranges(
    line_context: Dict[int, LineContext],
    hunk_markers: Optional[Sequence[DiffHunkMarker]] = None,
) -> List[HunkRange]:
    """Re-derive each hunk's old/new range from its content lines.

    A side with no lines (pure insertion or deletion) has no line numbers to
    recover its start from; the hunk marker's start is used when given, else 0.
    """
    grouped: Dict[int, List[LineContext]] = {}
    for key in sorted(line_context):
        context = line_context[key]
        grouped.setdefault(context.hunk, []).append(context)

    ranges: List[HunkRange] = []
    for hunk_index in sorted(grouped):
        members = grouped[hunk_index]
        old_lines = [c.old_line for c in members if c.old_line is not None]
        new_lines = [c.new_line for c in members if c.new_line is not None]
        marker = None
        if hunk_markers is not None and 0 <= hunk_index < len(hunk_markers):
            marker = hunk_markers[hunk_index]
        ranges.append(
            HunkRange(
                old_start=old_lines[0] if old_lines else (marker.old_start if marker else 0),
                old_count=len(old_lines),
                new_start=new_lines[0] if new_lines else (marker.new_start if marker else 0),
                new_count=len(new_lines),
            )
        )
    return ranges


def next_marker(markers, cursor: int, direction: int = 1):
    """Return the marker after (direction 1) or before (-1) ``cursor``, wrapping."""
    if not markers:
        return None
    ordered = sorted(markers, key=lambda marker: marker.displayed_line)
    if direction >= 0:
        for marker in ordered:
            if marker.displayed_line > cursor:
                return marker
        return ordered[0]
    for marker in reversed(ordered):
        if marker.displayed_line < cursor:
            return marker
    return ordered[-1]


def parse_files(text: str) -> List[DiffFileSummary]:
    """Summaries of each ``diff --git`` section and its hunk headers."""
    files: List[DiffFileSummary] = []
    current: Optional[DiffFileSummary] = None
    for line in split_lines(text):
        if line.startswith("diff --git "):
            old_path, new_path = _git_header_paths(line)
            current = DiffFileSummary(header=line, old_path=old_path, new_path=new_path)
            files.append(current)
        elif current is not None and line.startswith("@@"):
            current.hunks.append(line)
    return files


def build_diff_args(
    commit: Optional[str] = None,
    staged: bool = False,
    path: Optional[str] = None,
) -> List[str]:
    if commit:
        return ["show", "--patch", commit]
    args = ["diff"]
    if staged:
        args.append("--staged")
    if path:
        args.extend(["--", path])
    return args


class DiffView:
    """Refreshable diff state for one open view.

    Every refresh issues a fresh token keyed by its git arguments; results of
    superseded refreshes, or refreshes that finish after ``close()``, are
    dropped. Markers are rebuilt wholesale on each applied refresh.
    """

    def __init__(
        self,
        gateway: ProcessGateway,
        *,
        offset: int = 0,
        guard: Optional[StalenessGuard] = None,
    ):
        self.gateway = gateway
        self.offset = offset
        self.session = Session("diff", guard)
        self.text = ""
        self.request: Optional[Tuple[str, ...]] = None
        self.files: List[DiffFileMarker] = []
        self.hunks: List[DiffHunkMarker] = []
        self.line_context: Dict[int, LineContext] = {}

    @property
    def is_open(self) -> bool:
        return self.session.is_open

    async def refresh(
        self,
        *,
        commit: Optional[str] = None,
        staged: bool = False,
        path: Optional[str] = None,
    ) -> bool:
        """Load the diff. Returns False when the result was stale and dropped."""
        if not self.session.is_open:
            return False
        args = build_diff_args(commit=commit, staged=staged, path=path)
        token = self.session.begin(tuple(args))
        with timeit("diff.refresh", args=args) as info:
            result = await self.gateway.git(args)
            if not self.session.is_current(token):
                info["outcome"] = "stale"
                log_debug("Dropping stale diff", args=args)
                return False
            if not result.ok:
                raise ExecutionFailure(result, "diff")
            self.session.apply(token, self._load, tuple(args), result.stdout)
            info["files"] = len(self.files)
        return True

    def _load(self, request: Tuple[str, ...], text: str) -> None:
        self.request = request
        self.text = text
        self.files, self.hunks, self.line_context = collect_markers(split_lines(text), self.offset)

    def context_at(self, displayed_line: int) -> Optional[LineContext]:
        return self.line_context.get(displayed_line)

    def next_file(self, cursor: int) -> Optional[DiffFileMarker]:
        return next_marker(self.files, cursor, 1)

    def prev_file(self, cursor: int) -> Optional[DiffFileMarker]:
        return next_marker(self.files, cursor, -1)

    def next_hunk(self, cursor: int) -> Optional[DiffHunkMarker]:
        return next_marker(self.hunks, cursor, 1)

    def prev_hunk(self, cursor: int) -> Optional[DiffHunkMarker]:
        return next_marker(self.hunks, cursor, -1)

    def close(self) -> None:
        self.session.close()
