"""
Tests for logging setup and formatters.
"""

import io
import json
import logging
import sys

import pytest

from bwhero.logging_config import HumanFormatter, JSONFormatter, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(msg="hello", level=logging.INFO, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("bwhero.proxy.handler", level, __file__, 1, msg, None, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:

    def test_core_fields(self):
        entry = json.loads(JSONFormatter().format(_record("transcoded")))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "bwhero.proxy.handler"
        assert entry["message"] == "transcoded"
        assert "ts" in entry

    def test_extra_fields(self):
        record = _record(origin_url="http://example.com/a.png", reason="too-small", request_id="abc")
        entry = json.loads(JSONFormatter().format(record))
        assert entry["origin_url"] == "http://example.com/a.png"
        assert entry["reason"] == "too-small"
        assert entry["request_id"] == "abc"

    def test_unknown_extra_ignored(self):
        entry = json.loads(JSONFormatter().format(_record(secret="x")))
        assert "secret" not in entry

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = _record("failed", level=logging.ERROR, exc_info=sys.exc_info())
        entry = json.loads(JSONFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]


class TestHumanFormatter:

    def test_line_layout(self, monkeypatch):
        monkeypatch.setattr(sys, "stderr", io.StringIO())
        line = HumanFormatter().format(_record("hello", level=logging.WARNING))
        assert "WARNING" in line
        assert "[handler        ]" in line
        assert line.endswith("hello")


class TestSetupLogging:

    def test_level_and_json(self, restore_root_logger):
        setup_logging(level="debug", format_type="json")
        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)

    def test_env_defaults(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "WARNING")
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        setup_logging()
        assert restore_root_logger.level == logging.WARNING
        assert isinstance(restore_root_logger.handlers[0].formatter, HumanFormatter)

    def test_unknown_level_falls_back_to_info(self, restore_root_logger):
        setup_logging(level="chatty")
        assert restore_root_logger.level == logging.INFO

    def test_noisy_loggers_quieted(self, restore_root_logger):
        setup_logging(level="DEBUG")
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("werkzeug").level == logging.WARNING
