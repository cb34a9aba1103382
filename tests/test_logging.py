"""Tests for structured logging configuration."""

import json
import logging

from admission.app.core.config import Settings
from admission.app.core.logging import (
    ContextFilter,
    JSONFormatter,
    get_log_context,
    get_logger,
    get_logging_config,
)


def _record(msg="Test message", level=logging.INFO, exc_info=None):
    return logging.LogRecord(
        name="test",
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Test JSON formatter for structured logging."""

    def test_basic_json_format(self):
        data = json.loads(JSONFormatter().format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test"
        assert data["message"] == "Test message"
        assert "timestamp" in data
        assert data["source"]["file"] == "test.py"
        assert data["source"]["line"] == 1

    def test_json_format_with_context(self):
        record = _record("Request throttled")
        record.rate_limit_key = "user:42:endpoint:POST /bookings"
        record.backend = "memory"
        record.retry_after = 12

        data = json.loads(JSONFormatter().format(record))

        assert data["rate_limit_key"] == "user:42:endpoint:POST /bookings"
        assert data["backend"] == "memory"
        assert data["retry_after"] == 12
        assert "extra" not in data

    def test_json_format_with_extra_fields(self):
        record = _record("Custom event")
        record.degraded_since = 1700000000.0

        data = json.loads(JSONFormatter().format(record))

        assert data["extra"]["degraded_since"] == 1700000000.0

    def test_json_format_with_exception(self):
        import sys

        try:
            raise ValueError("Test error")
        except ValueError:
            record = _record("Error occurred", logging.ERROR, sys.exc_info())

        data = json.loads(JSONFormatter().format(record))

        exception_text = "".join(data["exception"])
        assert "ValueError" in exception_text
        assert "Test error" in exception_text


class TestContextFilter:
    """Test context filter for adding default fields."""

    def test_adds_default_fields(self):
        record = _record()
        assert ContextFilter().filter(record) is True
        for field in JSONFormatter.CONTEXT_FIELDS:
            assert getattr(record, field) is None

    def test_preserves_existing_values(self):
        record = _record()
        record.rate_limit_key = "ip:1.2.3.4"
        ContextFilter().filter(record)
        assert record.rate_limit_key == "ip:1.2.3.4"


class TestLoggingConfig:
    """Test dictConfig generation."""

    def test_text_format(self):
        config = get_logging_config(Settings(log_format="text", log_level="debug"))
        assert config["handlers"]["console"]["formatter"] == "standard"
        assert config["loggers"]["admission"]["level"] == "DEBUG"

    def test_structured_format(self):
        config = get_logging_config(Settings(log_format="structured"))
        assert config["handlers"]["console"]["formatter"] == "structured"
        assert "%(rate_limit_key)s" in config["formatters"]["structured"]["format"]

    def test_json_format(self):
        config = get_logging_config(Settings(log_format="json"))
        assert config["handlers"]["console"]["formatter"] == "json"
        assert config["formatters"]["json"]["()"] == "admission.app.core.logging.JSONFormatter"


class TestHelpers:
    """Test logger helpers."""

    def test_get_logger_default_name(self):
        assert get_logger().name == "admission"

    def test_log_context_drops_missing_values(self):
        context = get_log_context(rate_limit_key="user:1", endpoint=None, backend="redis")
        assert context == {"rate_limit_key": "user:1", "backend": "redis"}
