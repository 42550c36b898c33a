"""Tests for logging configuration."""

import json
import logging
import sys

import pytest

from glmt import logging_config
from glmt.logging_config import JsonFormatter, configure_logging


@pytest.fixture(autouse=True)
def restore_root_logger(monkeypatch):
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    for name in ("GLMT_LOG_LEVEL", "GLMT_LOG_FORMAT", "GLMT_LOG_FILE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(logging_config, "_configured", False)
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def _console_handler():
    return next(
        h
        for h in logging.getLogger().handlers
        if isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
    )


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_console_quiet_by_default(self):
        """Without verbose, only warnings reach stderr."""
        configure_logging()

        assert logging.getLogger().level == logging.INFO
        assert _console_handler().level == logging.WARNING

    def test_verbose_enables_debug(self):
        configure_logging(verbose=True)

        assert logging.getLogger().level == logging.DEBUG
        assert _console_handler().level == logging.DEBUG

    def test_env_level(self, monkeypatch):
        monkeypatch.setenv("GLMT_LOG_LEVEL", "error")

        configure_logging()

        assert logging.getLogger().level == logging.ERROR

    def test_second_call_is_ignored(self):
        configure_logging(level="ERROR")
        configure_logging(level="DEBUG")

        assert logging.getLogger().level == logging.ERROR

        configure_logging(level="DEBUG", force=True)
        assert logging.getLogger().level == logging.DEBUG

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "glmt.log"

        configure_logging(level="INFO", format="json", file_path=str(log_file))
        logging.getLogger("glmt.test").info("hello")
        for handler in logging.getLogger().handlers:
            handler.flush()

        record = json.loads(log_file.read_text().splitlines()[-1])
        assert record["message"] == "hello"
        assert record["logger"] == "glmt.test"


class TestJsonFormatter:
    """Tests for JsonFormatter."""

    def test_structure_and_extra(self):
        record = logging.LogRecord(
            "glmt.proxy", logging.WARNING, __file__, 1, "req %s", ("abc",), None
        )
        record.trace_id = "00001_x"

        data = json.loads(JsonFormatter().format(record))

        assert data["level"] == "WARNING"
        assert data["logger"] == "glmt.proxy"
        assert data["message"] == "req abc"
        assert data["extra"] == {"trace_id": "00001_x"}
        assert "timestamp" in data
