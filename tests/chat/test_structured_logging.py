"""
Unit tests for exchange log fields.
"""

import structlog
from structlog.contextvars import get_contextvars
from structlog.testing import capture_logs

from src.perplex.utils.structured_logging import (
    ExchangeLogContext,
    log_exchange_completed,
    log_exchange_error,
)


class TestExchangeLogContext:
    """Test binding and unbinding of exchange fields."""

    def test_fields_bound_inside_block(self):
        with ExchangeLogContext("sess-1", "user-1", "think"):
            assert get_contextvars() == {"session_id": "sess-1", "user_id": "user-1", "mode": "think"}

        assert get_contextvars() == {}

    def test_conversation_bound_mid_stream(self):
        with ExchangeLogContext("sess-1", "user-1", "quick") as log_context:
            log_context.bind_conversation("conv-1")
            assert get_contextvars()["conversation_id"] == "conv-1"

        assert "conversation_id" not in get_contextvars()

    def test_outer_fields_restored(self):
        structlog.contextvars.bind_contextvars(request_id="req-1")
        try:
            with ExchangeLogContext("sess-1", "user-1", "quick"):
                assert get_contextvars()["request_id"] == "req-1"

            assert get_contextvars() == {"request_id": "req-1"}
        finally:
            structlog.contextvars.clear_contextvars()


class TestExchangeLines:
    """Test the completed and failed lines."""

    def test_completed_line(self):
        with capture_logs() as logs:
            log_exchange_completed(
                state="aborted",
                finish_reason="stopped",
                duration_ms=120,
                output_length=11,
                tool_calls=0,
            )

        assert logs == [{
            "event": "exchange_completed",
            "log_level": "info",
            "state": "aborted",
            "finish_reason": "stopped",
            "duration_ms": 120,
            "output_length": 11,
            "tool_calls": 0,
        }]

    def test_failed_line(self):
        with capture_logs() as logs:
            try:
                raise TimeoutError("upstream timed out")
            except TimeoutError as e:
                log_exchange_error(e, stage="stream", category="timeout", partial_length=5, state="failed")

        line = logs[0]
        assert line["event"] == "exchange_failed"
        assert line["log_level"] == "error"
        assert line["stage"] == "stream"
        assert line["error_type"] == "TimeoutError"
        assert line["error_message"] == "upstream timed out"
        assert line["category"] == "timeout"
        assert line["recoverable"] is True
        assert line["partial_length"] == 5
        assert line["state"] == "failed"

    def test_persistence_failure_line(self):
        with capture_logs() as logs:
            log_exchange_error(ConnectionError("redis down"), stage="persist_exchange")

        assert logs[0]["stage"] == "persist_exchange"
        assert logs[0]["category"] is None
        assert logs[0]["partial_length"] is None
