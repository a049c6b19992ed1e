from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from git import Repo

from gitflow.testing import ScriptedGateway


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    os.environ.setdefault("PYTHONPATH", str(src))
    # Keep test runs out of ~/.gitflow/logs
    os.environ.setdefault("GITFLOW_LOG_DISABLE_FILE", "1")


@pytest.fixture(scope="session")
def anyio_backend():
    """Configure anyio to use asyncio backend only.

    The gateway runs processes through asyncio.to_thread, which is
    incompatible with trio.
    """
    return "asyncio"


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def manual_gateway():
    return ScriptedGateway(manual=True)


def commit_file(repo: Repo, name: str, content: str, message: str) -> str:
    path = Path(repo.working_tree_dir) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.index.add([name])
    return repo.index.commit(message).hexsha


@pytest.fixture
def git_repo(tmp_path) -> Repo:
    """Throwaway repository on ``main`` with one seed commit."""
    workdir = tmp_path / "work"
    repo = Repo.init(workdir)
    with repo.config_writer() as cfg:
        cfg.set_value("user", "name", "Gitflow Tests")
        cfg.set_value("user", "email", "tests@gitflow.invalid")
        cfg.set_value("commit", "gpgsign", "false")
    commit_file(repo, "README.md", "seed\n", "seed")
    repo.git.branch("-M", "main")
    return repo
