"""Tests for rate limiting events and sinks."""

import logging
from unittest.mock import MagicMock, patch

from admission.app.services.rate_limit.events import (
    BackendDegraded,
    CallbackEventSink,
    CompositeEventSink,
    LoggingEventSink,
    RequestThrottled,
    publish_safely,
)


def _throttled():
    return RequestThrottled(
        key="user:42:endpoint:POST /bookings",
        endpoint="POST /bookings",
        binding_spec="sliding:5:60",
        retry_after=12,
        user_id="42",
    )


class TestEvents:
    """Tests for event payloads."""

    def test_request_throttled_to_dict(self):
        data = _throttled().to_dict()
        assert data["event"] == "request_throttled"
        assert data["key"] == "user:42:endpoint:POST /bookings"
        assert data["binding_spec"] == "sliding:5:60"
        assert data["retry_after"] == 12
        assert data["client_ip"] is None
        assert "occurred_at" in data

    def test_backend_degraded_to_dict(self):
        data = BackendDegraded(error="Connection refused", since=1700000000.0).to_dict()
        assert data["event"] == "backend_degraded"
        assert data["backend"] == "redis"
        assert data["since"] == 1700000000.0


class TestSinks:
    """Tests for event sinks."""

    def test_callback_sink(self):
        received = []
        CallbackEventSink(received.append).publish(_throttled())
        assert len(received) == 1

    def test_composite_sink_isolates_failures(self):
        failing = MagicMock()
        failing.publish.side_effect = RuntimeError("boom")
        received = []
        sink = CompositeEventSink([failing, CallbackEventSink(received.append)])

        sink.publish(_throttled())

        failing.publish.assert_called_once()
        assert len(received) == 1

    def test_publish_safely_ignores_missing_sink(self):
        publish_safely(None, _throttled())

    def test_publish_safely_logs_failure(self):
        sink = MagicMock()
        sink.publish.side_effect = RuntimeError("boom")
        with patch("admission.app.services.rate_limit.events.logger") as mock_logger:
            publish_safely(sink, _throttled())
        mock_logger.exception.assert_called_once()

    def test_logging_sink_levels(self):
        sink = LoggingEventSink()
        with patch.object(sink._logger, "warning") as mock_warning, \
             patch.object(sink._logger, "error") as mock_error:
            sink.publish(_throttled())
            sink.publish(BackendDegraded(error="down", since=0.0))

        mock_warning.assert_called_once()
        assert mock_warning.call_args.kwargs["extra"]["retry_after"] == 12
        assert mock_warning.call_args.kwargs["extra"]["rate_limit_key"] == "user:42:endpoint:POST /bookings"
        mock_error.assert_called_once()
        assert mock_error.call_args.kwargs["extra"]["backend"] == "redis"

    def test_logging_sink_uses_named_logger(self):
        sink = LoggingEventSink("custom.events")
        assert sink._logger is logging.getLogger("custom.events")
