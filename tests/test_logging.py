"""
Tests for the logging module.

This test module validates:
- JSON-formatted log output
- Logger configuration from keyword arguments and LoggingConfig
- Logger naming
"""

from __future__ import annotations

import json
import logging
import sys
from io import StringIO

import pytest

from selfupdate.config import LoggingConfig
from selfupdate.logging import JSONFormatter, get_logger, setup_logging


def _record(msg: str = "Test message", level: int = logging.INFO, **kwargs) -> logging.LogRecord:
    return logging.LogRecord(
        name="test_logger",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=kwargs.pop("args", ()),
        exc_info=kwargs.pop("exc_info", None),
    )


# =============================================================================
# Tests for JSONFormatter
# =============================================================================


class TestJSONFormatter:
    """Tests for JSONFormatter class."""

    def test_format_basic_log_record(self) -> None:
        """Test formatting a basic log record as JSON."""
        parsed = json.loads(JSONFormatter().format(_record()))

        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test_logger"
        assert parsed["message"] == "Test message"
        assert "timestamp" in parsed

    def test_format_with_extra_fields(self) -> None:
        """Test extra fields are carried into the JSON object."""
        record = _record("Fetching origin/main...")
        record.upstream = "origin/main"
        record.revision = "4f2c9e1"

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["upstream"] == "origin/main"
        assert parsed["revision"] == "4f2c9e1"

    def test_format_with_message_args(self) -> None:
        """Test formatting with message arguments."""
        parsed = json.loads(JSONFormatter().format(_record("Port %d in use", args=(4000,))))

        assert parsed["message"] == "Port 4000 in use"

    def test_format_with_exception(self) -> None:
        """Test formatting with exception info."""
        try:
            raise ValueError("Test error")
        except ValueError:
            exc_info = sys.exc_info()

        parsed = json.loads(
            JSONFormatter().format(_record("failed", level=logging.ERROR, exc_info=exc_info))
        )

        assert parsed["level"] == "ERROR"
        assert "ValueError: Test error" in parsed["exception"]

    def test_format_non_serializable_extra(self) -> None:
        """Test non-JSON values fall back to str()."""
        record = _record()
        record.path = object()

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["path"].startswith("<object")

    def test_format_timestamp_is_utc(self) -> None:
        """Test that timestamp is ISO 8601 in UTC."""
        timestamp = json.loads(JSONFormatter().format(_record()))["timestamp"]

        assert "T" in timestamp
        assert timestamp.endswith("+00:00")


# =============================================================================
# Tests for setup_logging
# =============================================================================


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_returns_package_logger(self) -> None:
        """Test that setup_logging returns the package logger."""
        logger = setup_logging()
        assert logger.name == "selfupdate"

    def test_sets_level(self) -> None:
        """Test that setup_logging sets the log level."""
        assert setup_logging(level="DEBUG").level == logging.DEBUG
        assert setup_logging(level="ERROR").level == logging.ERROR

    def test_plain_text_by_default(self) -> None:
        """Test that the default format is plain text."""
        logger = setup_logging()
        assert not any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers)

    def test_json_format(self) -> None:
        """Test that json_format installs the JSON formatter."""
        logger = setup_logging(json_format=True)
        assert any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers)

    def test_from_config(self) -> None:
        """Test that LoggingConfig overrides keyword arguments."""
        config = LoggingConfig(level="warn", json_format=True, log_to_stdout=False)

        logger = setup_logging(config, level="DEBUG", json_format=False)

        assert logger.level == logging.WARNING
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.handlers[0].stream is sys.stderr

    def test_clears_existing_handlers(self) -> None:
        """Test that repeated setup does not stack handlers."""
        setup_logging()
        logger = setup_logging()
        assert len(logger.handlers) == 1

    def test_no_propagation(self) -> None:
        """Test that logger does not propagate to root logger."""
        assert setup_logging().propagate is False

    def test_output_goes_to_stdout(self, capsys: pytest.CaptureFixture[str]) -> None:
        """Test that progress messages are written to stdout."""
        setup_logging()
        get_logger("updates").info("Compiling...")

        assert "Compiling..." in capsys.readouterr().out


# =============================================================================
# Tests for get_logger
# =============================================================================


class TestGetLogger:
    """Tests for get_logger function."""

    def test_adds_prefix(self) -> None:
        """Test that get_logger adds the selfupdate prefix."""
        assert get_logger("my_module").name == "selfupdate.my_module"

    def test_does_not_duplicate_prefix(self) -> None:
        """Test that the prefix is not duplicated."""
        assert get_logger("selfupdate.cli").name == "selfupdate.cli"

    def test_child_inherits_level(self) -> None:
        """Test that child loggers inherit the package level."""
        setup_logging(level="DEBUG")
        assert get_logger("config").getEffectiveLevel() == logging.DEBUG

    def test_json_lines(self) -> None:
        """Test one JSON object per log call."""
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JSONFormatter())
        logger = logging.getLogger("test.lines")
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)

        logger.info("first")
        logger.info("second")

        lines = stream.getvalue().strip().split("\n")
        assert [json.loads(line)["message"] for line in lines] == ["first", "second"]
