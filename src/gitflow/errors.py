"""Exception types shared across gitflow modules."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .gateway import CommandResult


class GitflowError(Exception):
    """Base exception for gitflow operations."""
    pass


class ExecutionFailure(GitflowError):
    """An external command exited non-zero.

    The diagnostic text is kept verbatim so front ends can show exactly what
    git or gh printed.
    """

    def __init__(self, result: "CommandResult", action: str | None = None):
        self.result = result
        self.action = action or " ".join(result.argv)
        self.diagnostic = result.output
        super().__init__(self.diagnostic or f"{self.action} failed")

    @property
    def exit_code(self) -> int:
        return self.result.exit_code


class InvalidActionError(GitflowError, ValueError):
    """Rebase action outside the allowed set."""
    pass
