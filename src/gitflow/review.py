"""Pull request review threads and the pending comment batch.

Comments come from ``gh api repos/{owner}/{repo}/pulls/<n>/comments``; their
``in_reply_to_id`` links replies to a parent. ``build_threads`` groups them in
arrival order. Locally composed comments wait in ``ReviewSession.pending``
until a whole batch is submitted as one review.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .diff import (
    DiffFileMarker,
    DiffHunkMarker,
    LineContext,
    LineKind,
    collect_markers,
    split_lines,
)
from .errors import ExecutionFailure
from .gateway import CommandResult, ProcessGateway
from .observability import log_action, log_debug, log_warning, timeit
from .staleness import Session, StalenessGuard


@dataclass(frozen=True)
class ReviewComment:
    id: int
    body: str = ""
    author: str = ""
    path: Optional[str] = None
    line: Optional[int] = None
    original_line: Optional[int] = None
    parent_id: Optional[int] = None
    created_at: Optional[str] = None


@dataclass
class ReviewThread:
    id: int
    members: List[ReviewComment] = field(default_factory=list)
    path: Optional[str] = None
    line: Optional[int] = None

    @property
    def root(self) -> ReviewComment:
        return self.members[0]


class ReviewMode(str, Enum):
    APPROVE = "approve"
    REQUEST_CHANGES = "request_changes"
    COMMENT = "comment"

    @property
    def event(self) -> str:
        return self.value.upper()


@dataclass(frozen=True)
class PendingComment:
    path: str
    line: int
    body: str
    side: str = "RIGHT"

    def to_payload(self) -> Dict[str, Any]:
        return {"path": self.path, "line": self.line, "side": self.side, "body": self.body}


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _iter_json_values(text: str) -> Iterable[Any]:
    """Yield each JSON value in ``text``; ``--paginate`` concatenates arrays."""
    decoder = json.JSONDecoder()
    index = 0
    length = len(text)
    while index < length:
        while index < length and text[index].isspace():
            index += 1
        if index >= length:
            break
        value, index = decoder.raw_decode(text, index)
        yield value


def comments_from_api(text: str) -> List[ReviewComment]:
    """Decode review comments from (possibly paginated) gh api output."""
    comments: List[ReviewComment] = []
    for value in _iter_json_values(text or ""):
        items = value if isinstance(value, list) else [value]
        for item in items:
            if not isinstance(item, dict):
                continue
            comment_id = _to_int(item.get("id"))
            if comment_id is None:
                continue
            user = item.get("user") or {}
            comments.append(
                ReviewComment(
                    id=comment_id,
                    body=str(item.get("body") or ""),
                    author=str(user.get("login") or "") if isinstance(user, dict) else "",
                    path=item.get("path") or None,
                    line=_to_int(item.get("line")),
                    original_line=_to_int(item.get("original_line")),
                    parent_id=_to_int(item.get("in_reply_to_id")),
                    created_at=item.get("created_at"),
                )
            )
    return comments


def _anchor_line(comment: ReviewComment) -> Optional[int]:
    return comment.line if comment.line is not None else comment.original_line


def _resolve_anchor(thread: ReviewThread) -> None:
    root = thread.root
    if root.path and _anchor_line(root) is not None:
        thread.path, thread.line = root.path, _anchor_line(root)
        return
    for reply in reversed(thread.members[1:]):
        if reply.path and _anchor_line(reply) is not None:
            thread.path, thread.line = reply.path, _anchor_line(reply)
            return
    thread.path, thread.line = root.path, _anchor_line(root)


def build_threads(comments: Iterable[ReviewComment]) -> Dict[int, ReviewThread]:
    """Group comments into reply threads keyed by the thread's first comment id.

    A reply whose parent is not a known member (deleted, or on another page)
    starts its own thread instead of being dropped.
    """
    threads: Dict[int, ReviewThread] = {}
    member_of: Dict[int, int] = {}

    for comment in comments:
        thread_id = member_of.get(comment.parent_id) if comment.parent_id is not None else None
        if thread_id is None:
            if comment.parent_id is not None:
                log_warning(
                    "Review comment parent not found; starting new thread",
                    comment_id=comment.id,
                    parent_id=comment.parent_id,
                )
            thread_id = comment.id
            threads[thread_id] = ReviewThread(id=thread_id)
        threads[thread_id].members.append(comment)
        member_of[comment.id] = thread_id

    for thread in threads.values():
        _resolve_anchor(thread)
    return threads


def build_review_payload(
    mode: ReviewMode | str,
    body: str = "",
    comments: Iterable[PendingComment] = (),
) -> Dict[str, Any]:
    review_mode = ReviewMode(mode)
    payload: Dict[str, Any] = {"event": review_mode.event}
    text = (body or "").strip()
    if text:
        payload["body"] = text
    queued = [comment.to_payload() for comment in comments]
    if queued:
        payload["comments"] = queued
    return payload


def _pulls_endpoint(number: int, suffix: str) -> str:
    return f"repos/{{owner}}/{{repo}}/pulls/{number}/{suffix}"


class ReviewSession:
    """Review state for one pull request."""

    def __init__(
        self,
        gateway: ProcessGateway,
        number: int,
        *,
        offset: int = 0,
        guard: Optional[StalenessGuard] = None,
    ):
        self.gateway = gateway
        self.number = int(number)
        self.offset = offset
        self.session = Session(f"review:{self.number}", guard)
        self.diff_text = ""
        self.files: List[DiffFileMarker] = []
        self.hunks: List[DiffHunkMarker] = []
        self.line_context: Dict[int, LineContext] = {}
        self.threads: Dict[int, ReviewThread] = {}
        self.pending: List[PendingComment] = []

    @property
    def is_open(self) -> bool:
        return self.session.is_open

    async def refresh(self) -> bool:
        """Reload diff and comments. Returns False if the result went stale."""
        if not self.session.is_open:
            return False
        token = self.session.begin(self.number)
        with timeit("review.refresh", number=self.number) as info:
            diff_result, comments_result = await asyncio.gather(
                self.gateway.gh(["pr", "diff", str(self.number), "--patch"]),
                self.gateway.gh(["api", _pulls_endpoint(self.number, "comments"), "--paginate"]),
            )
            if not self.session.is_current(token):
                info["outcome"] = "stale"
                log_debug("Dropping stale review refresh", number=self.number)
                return False
            if not diff_result.ok:
                raise ExecutionFailure(diff_result, "diff")
            if not comments_result.ok:
                raise ExecutionFailure(comments_result, "review_comments")
            comments = comments_from_api(comments_result.stdout)
            self.session.apply(token, self._load, diff_result.stdout, comments)
            info["threads"] = len(self.threads)
        return True

    def _load(self, diff_text: str, comments: List[ReviewComment]) -> None:
        self.diff_text = diff_text
        self.files, self.hunks, self.line_context = collect_markers(split_lines(diff_text), self.offset)
        self.threads = build_threads(comments)

    def queue_comment(self, path: str, line: int, body: str, side: str = "RIGHT") -> Optional[PendingComment]:
        text = (body or "").strip()
        if not text:
            raise ValueError("Comment cannot be empty")
        if not self.session.is_open:
            return None
        comment = PendingComment(path=path, line=int(line), body=text, side=side)
        self.pending.append(comment)
        return comment

    def queue_comment_at(self, displayed_line: int, body: str) -> Optional[PendingComment]:
        """Queue a comment on the diff line shown at ``displayed_line``."""
        context = self.line_context.get(displayed_line)
        if context is None or not context.path:
            return None
        if context.kind is LineKind.DELETED:
            return self.queue_comment(context.path, context.old_line, body, side="LEFT")
        return self.queue_comment(context.path, context.new_line, body, side="RIGHT")

    def discard_pending(self, index: int) -> None:
        if 0 <= index < len(self.pending):
            del self.pending[index]

    async def submit_batch(self, mode: ReviewMode | str, body: str = "") -> Optional[CommandResult]:
        """Submit every pending comment as one review.

        The queue is cleared only on success; comments queued while the
        request was in flight stay pending. Returns None once the session is
        closed.
        """
        batch = list(self.pending)
        payload = build_review_payload(mode, body, batch)
        if not self.session.is_open:
            log_debug("Ignoring review submission for closed session", number=self.number)
            return None
        args = ["api", _pulls_endpoint(self.number, "reviews"), "--method", "POST", "--input", "-"]
        result = await self.gateway.gh(args, stdin=json.dumps(payload))
        log_action(
            "review.submit",
            outcome="ok" if result.ok else "error",
            number=self.number,
            event=payload["event"],
            comments=len(batch),
        )
        if not result.ok:
            raise ExecutionFailure(result, "submit_review")
        submitted = {id(comment) for comment in batch}
        self.pending = [comment for comment in self.pending if id(comment) not in submitted]
        return result

    async def reply(self, comment_id: int, body: str) -> Optional[CommandResult]:
        text = (body or "").strip()
        if not text:
            raise ValueError("Reply cannot be empty")
        if not self.session.is_open:
            return None
        endpoint = _pulls_endpoint(self.number, f"comments/{int(comment_id)}/replies")
        result = await self.gateway.gh(["api", endpoint, "--method", "POST", "--field", f"body={text}"])
        if not result.ok:
            raise ExecutionFailure(result, "reply_to_review_comment")
        return result

    def close(self) -> None:
        self.session.close()
