"""gitflow: structured state for interactive git front ends."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("gitflow-core")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"  # Fallback for editable installs without metadata

from .errors import ExecutionFailure, GitflowError, InvalidActionError  # noqa: F401
from .gateway import CommandRequest, CommandResult, ProcessGateway  # noqa: F401
from .staleness import LatestValue, RequestToken, Session, StalenessGuard  # noqa: F401
from .diff import DiffView, collect_markers, parse_hunk_header  # noqa: F401
from .review import ReviewSession, build_threads  # noqa: F401
from .rebase import RebaseSession, build_todo  # noqa: F401
from .bisect import BisectTracker, parse_first_bad  # noqa: F401
from .sync import SyncPipeline  # noqa: F401

__all__ = [
    "ExecutionFailure",
    "GitflowError",
    "InvalidActionError",
    "CommandRequest",
    "CommandResult",
    "ProcessGateway",
    "LatestValue",
    "RequestToken",
    "Session",
    "StalenessGuard",
    "DiffView",
    "collect_markers",
    "parse_hunk_header",
    "ReviewSession",
    "build_threads",
    "RebaseSession",
    "build_todo",
    "BisectTracker",
    "parse_first_bad",
    "SyncPipeline",
    "__version__",
]
