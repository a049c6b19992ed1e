import json
import logging

import pytest

from gitflow import observability as obs
from gitflow.observability import (
    LOGGER_NAME,
    _get_log_file_path,
    _get_log_level,
    log_action,
    log_debug,
    log_error,
    log_warning,
    timeit,
)


@pytest.fixture(autouse=True)
def reset_logger():
    """Reset logger state between tests."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.handlers.clear()
    obs._logger_initialized = False
    yield
    logger.handlers.clear()
    obs._logger_initialized = False


def test_log_action_emits_json(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    log_action("sync.pull", outcome="conflict", duration_ms=123, remote="origin", paths=["a.txt"])
    data = json.loads(caplog.records[-1].message)
    assert data["action"] == "sync.pull"
    assert data["outcome"] == "conflict"
    assert data["duration_ms"] == 123
    assert data["remote"] == "origin"
    assert data["paths"] == ["a.txt"]
    assert "ts" in data


def test_timeit_success_logs(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    with timeit("diff.refresh", args="HEAD"):
        pass
    data = json.loads(caplog.records[-1].message)
    assert data["action"] == "diff.refresh"
    assert data["outcome"] == "ok"
    assert data["args"] == "HEAD"
    assert isinstance(data["duration_ms"], (int, float))


def test_timeit_error_logs_and_reraises(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    with pytest.raises(RuntimeError):
        with timeit("rebase.execute", base="main"):
            raise RuntimeError("boom")
    data = json.loads(caplog.records[-1].message)
    assert data["outcome"] == "error"
    assert data["base"] == "main"


def test_timeit_block_sets_outcome_and_fields(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    with timeit("bisect.run", script="./check.sh") as info:
        info["outcome"] = "stale"
        info["first_bad"] = "abc1234"
    data = json.loads(caplog.records[-1].message)
    assert data["outcome"] == "stale"
    assert data["first_bad"] == "abc1234"
    assert data["script"] == "./check.sh"


def test_log_debug_with_fields(caplog, monkeypatch):
    """Test log_debug appends structured fields."""
    monkeypatch.setenv("GITFLOW_LOG_LEVEL", "DEBUG")
    caplog.set_level(logging.DEBUG, logger=LOGGER_NAME)
    log_debug("Dropped stale result", scope="diff", generation=3)
    msg = caplog.records[-1].message
    assert "Dropped stale result" in msg
    assert '"generation":3' in msg
    assert '"scope":"diff"' in msg


def test_log_debug_not_emitted_at_info(caplog):
    caplog.set_level(logging.INFO, logger=LOGGER_NAME)
    log_debug("should not appear")
    assert not [r for r in caplog.records if r.levelno == logging.DEBUG]


def test_log_warning_and_error_levels(caplog):
    caplog.set_level(logging.WARNING, logger=LOGGER_NAME)
    log_warning("orphan reply", comment_id=7)
    log_error("push failed")
    assert caplog.records[-2].levelno == logging.WARNING
    assert '"comment_id":7' in caplog.records[-2].message
    assert caplog.records[-1].levelno == logging.ERROR


def test_log_level_from_env(monkeypatch):
    monkeypatch.setenv("GITFLOW_LOG_LEVEL", "warning")
    assert _get_log_level() == logging.WARNING

    monkeypatch.setenv("GITFLOW_LOG_LEVEL", "NOT_A_LEVEL")
    assert _get_log_level() == logging.INFO


def test_disable_file_logging(monkeypatch):
    monkeypatch.setenv("GITFLOW_LOG_DISABLE_FILE", "1")
    assert _get_log_file_path() is None


def test_custom_log_dir(monkeypatch, tmp_path):
    monkeypatch.delenv("GITFLOW_LOG_DISABLE_FILE", raising=False)
    custom_dir = tmp_path / "custom_logs"
    monkeypatch.setenv("GITFLOW_LOG_DIR", str(custom_dir))
    path = _get_log_file_path()
    assert path is not None
    assert path.parent == custom_dir
    assert path.name.startswith("gitflow_")
    assert custom_dir.exists()


def test_file_handler_writes_actions(monkeypatch, tmp_path):
    monkeypatch.delenv("GITFLOW_LOG_DISABLE_FILE", raising=False)
    monkeypatch.setenv("GITFLOW_LOG_DIR", str(tmp_path))
    log_action("sync.push", outcome="ok")
    for handler in logging.getLogger(LOGGER_NAME).handlers:
        handler.flush()
    [log_file] = list(tmp_path.glob("gitflow_*.log"))
    assert '"action":"sync.push"' in log_file.read_text()
