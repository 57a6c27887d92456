"""Tests for logging setup."""

import logging
from logging.handlers import RotatingFileHandler

import pytest
import structlog

from mcp_warden.logging import get_logger, server_context, setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    """Put the root logger back the way the test found it."""
    handlers = list(logging.root.handlers)
    level = logging.root.level
    yield
    for handler in logging.root.handlers:
        if handler not in handlers:
            handler.close()
    logging.root.handlers = handlers
    logging.root.setLevel(level)
    structlog.reset_defaults()


def _new_handlers(before):
    return [h for h in logging.root.handlers if h not in before]


class TestSetupLogging:
    """Tests for setup_logging."""

    def test_console_only_by_default(self, test_settings):
        """Without file logging only the stdout handler is installed."""
        before = list(logging.root.handlers)
        setup_logging(test_settings)
        added = _new_handlers(before)
        assert len(added) == 1
        assert isinstance(added[0], logging.StreamHandler)
        assert logging.root.level == logging.DEBUG

    def test_repeated_setup_replaces_handlers(self, test_settings):
        """Calling setup twice does not stack handlers."""
        before = list(logging.root.handlers)
        setup_logging(test_settings)
        setup_logging(test_settings.model_copy(update={"log_level": "ERROR"}))
        assert len(_new_handlers(before)) == 1
        assert logging.root.level == logging.ERROR

    def test_file_handler(self, test_settings, tmp_path):
        """log_to_file adds a rotating handler under the log directory."""
        settings = test_settings.model_copy(
            update={"log_to_file": True, "log_directory": str(tmp_path / "logs")}
        )
        before = list(logging.root.handlers)
        setup_logging(settings)

        files = [h for h in _new_handlers(before) if isinstance(h, RotatingFileHandler)]
        assert len(files) == 1
        assert (tmp_path / "logs").is_dir()

    def test_unusable_log_directory(self, test_settings, tmp_path, capsys):
        """An unusable log directory falls back to console logging."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        settings = test_settings.model_copy(
            update={"log_to_file": True, "log_directory": str(blocker / "logs")}
        )
        before = list(logging.root.handlers)
        setup_logging(settings)

        added = _new_handlers(before)
        assert len(added) == 1
        assert not isinstance(added[0], RotatingFileHandler)
        assert "file logging disabled" in capsys.readouterr().err


class TestServerContext:
    """Tests for server_context."""

    def test_binds_and_clears(self):
        """The server id is bound inside the block only."""
        with server_context("srv-1", request_id="req-9"):
            bound = structlog.contextvars.get_contextvars()
            assert bound["server_id"] == "srv-1"
            assert bound["request_id"] == "req-9"
        assert "server_id" not in structlog.contextvars.get_contextvars()

    def test_get_logger(self):
        """get_logger returns a usable structlog logger."""
        log = get_logger("mcp_warden.test")
        log.info("logger_ready", server_id="srv-1")
