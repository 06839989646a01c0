"""Tests for the logging setup."""

import logging
from logging.handlers import RotatingFileHandler

import pytest

from session_relay.base.logging_config import ColoredFormatter, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestSetupLogging:
    """Test handler configuration."""

    def test_console_and_file(self, tmp_path):
        setup_logging(log_file="agent.log", log_dir=tmp_path)

        handlers = logging.getLogger().handlers
        assert len(handlers) == 2
        file_handler = next(h for h in handlers if isinstance(h, RotatingFileHandler))
        assert file_handler.level == logging.WARNING

        logging.getLogger("session_relay.test").warning("uplink lost")
        file_handler.flush()
        assert "uplink lost" in (tmp_path / "agent.log").read_text(encoding="utf-8")

    def test_no_file(self, tmp_path):
        setup_logging(log_dir=tmp_path, file_log_level=logging.NOTSET)

        assert not any(isinstance(h, RotatingFileHandler) for h in logging.getLogger().handlers)
        assert list(tmp_path.iterdir()) == []

    def test_repeated_setup_replaces_handlers(self, tmp_path):
        setup_logging(log_dir=tmp_path)
        setup_logging(log_dir=tmp_path)

        assert len(logging.getLogger().handlers) == 2

    def test_external_loggers_pinned(self, tmp_path):
        setup_logging(log_dir=tmp_path, console_log_level=logging.DEBUG)

        assert logging.getLogger("aiomqtt").level == logging.INFO


class TestColoredFormatter:
    """Test ANSI colouring."""

    def test_wraps_message(self):
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, None)

        output = ColoredFormatter("%(message)s").format(record)

        assert output.startswith("\033[38;5;1m")
        assert output.endswith("\033[0m")
        assert "boom" in output
