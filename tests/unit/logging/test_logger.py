# tests/unit/logging/test_logger.py — v2
"""Tests for logging/logger.py — logger factory and formatters."""

from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler

import pytest

from dealintake.logging.context import clear_context, set_document_context, set_session_context
from dealintake.logging.logger import (
    JsonFormatter,
    TextFormatter,
    get_logger,
    parse_size,
    setup_logging,
)


def _record(msg: str = "Hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="test", level=logging.INFO, pathname="", lineno=0,
        msg=msg, args=(), exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_format_basic(self):
        parsed = json.loads(JsonFormatter().format(_record()))
        assert parsed["level"] == "INFO"
        assert parsed["message"] == "Hello"
        assert "timestamp" in parsed
        assert "context" not in parsed

    def test_format_with_context(self):
        set_session_context("sess-1")
        set_document_context("doc1", component="dispatcher")
        parsed = json.loads(JsonFormatter().format(_record("test msg")))
        assert parsed["context"] == {
            "session_id": "sess-1",
            "document_id": "doc1",
            "component": "dispatcher",
        }

    def test_format_with_data(self):
        record = _record("merge failed", data={"facility_id": "f1", "period": "undated"})
        parsed = json.loads(JsonFormatter().format(record))
        assert parsed["data"]["facility_id"] == "f1"


class TestTextFormatter:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_format_basic(self):
        output = TextFormatter().format(_record("Hello text"))
        assert "Hello text" in output
        assert "INFO" in output

    def test_format_with_context(self):
        set_session_context("abcdef0123456789")
        set_document_context("om.txt")
        output = TextFormatter().format(_record())
        assert "<abcdef01>" in output
        assert "[om.txt]" in output


class TestParseSize:
    @pytest.mark.parametrize("value,expected", [
        ("10MB", 10 * 1024**2),
        ("512KB", 512 * 1024),
        ("1gb", 1024**3),
    ])
    def test_valid(self, value, expected):
        assert parse_size(value) == expected

    def test_invalid(self):
        with pytest.raises(ValueError, match="Invalid size"):
            parse_size("ten megabytes")


class TestGetLogger:
    def test_returns_logger(self):
        logger = get_logger("test_module")
        assert logger.name == "dealintake.test_module"


class TestSetupLogging:
    def test_setup_json(self):
        setup_logging(level="DEBUG", log_format="json")
        root = logging.getLogger("dealintake")
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_setup_text(self):
        setup_logging(level="INFO", log_format="text")
        root = logging.getLogger("dealintake")
        assert root.level == logging.INFO
        assert isinstance(root.handlers[0].formatter, TextFormatter)

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "pipeline.log"
        setup_logging(level="INFO", log_file=log_file, rotation="1MB", retention=3)
        root = logging.getLogger("dealintake")
        rotating = [h for h in root.handlers if isinstance(h, RotatingFileHandler)]
        assert len(rotating) == 1
        assert rotating[0].maxBytes == 1024**2
        assert rotating[0].backupCount == 3
        assert log_file.parent.is_dir()
        for handler in rotating:
            root.removeHandler(handler)
            handler.close()
