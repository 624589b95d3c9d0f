"""
Structured logging for streamed exchanges.

structlog is configured once at startup. Exchange fields (session, user,
mode and, once resolved, conversation) are bound through structlog's
contextvars, so every structlog line emitted while a stream is driven,
including the background persistence task it spawns, carries them.
"""

import logging
import sys
from typing import Dict, Optional

import structlog

exchange_logger = structlog.get_logger("perplex.exchange")


def _add_service(service_name: str):
    def processor(logger, method_name, event_dict):
        event_dict.setdefault("service", service_name)
        return event_dict
    return processor


def setup_structured_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    service_name: str = "perplex-chat"
):
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Logging level
        log_format: json for production, console for local development
        service_name: Value of the `service` field on every line
    """
    renderer = structlog.processors.JSONRenderer() if log_format == "json" else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            _add_service(service_name),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


class ExchangeLogContext:
    """Binds exchange fields for the lifetime of one stream."""

    def __init__(self, session_id: str, user_id: str, mode: str):
        self._fields = {"session_id": session_id, "user_id": user_id, "mode": mode}
        self._tokens: Dict[str, object] = {}

    def __enter__(self):
        self._tokens = dict(structlog.contextvars.bind_contextvars(**self._fields))
        return self

    def bind_conversation(self, conversation_id: str):
        """Attach the conversation once it is known (it may be created mid-stream)."""
        tokens = structlog.contextvars.bind_contextvars(conversation_id=conversation_id)
        for key, token in tokens.items():
            self._tokens.setdefault(key, token)

    def __exit__(self, exc_type, exc_val, exc_tb):
        structlog.contextvars.reset_contextvars(**self._tokens)
        self._tokens = {}


def log_exchange_completed(
    state: str,
    finish_reason: Optional[str],
    duration_ms: int,
    output_length: int,
    **fields
):
    """One line per exchange, written when the client channel closes."""
    exchange_logger.info(
        "exchange_completed",
        state=state,
        finish_reason=finish_reason,
        duration_ms=duration_ms,
        output_length=output_length,
        **fields
    )


def log_exchange_error(
    error: Exception,
    stage: str,
    category: Optional[str] = None,
    recoverable: bool = True,
    partial_length: Optional[int] = None,
    **fields
):
    """
    Log a failure at one stage of an exchange.

    Args:
        error: Exception that occurred
        stage: stream, persist_exchange, search_history or auto_title
        category: ErrorCategory value when the error was normalized
        recoverable: Whether retrying the exchange can succeed
        partial_length: Characters already delivered to the client
    """
    exchange_logger.error(
        "exchange_failed",
        stage=stage,
        error_type=type(error).__name__,
        error_message=str(error),
        category=category,
        recoverable=recoverable,
        partial_length=partial_length,
        exc_info=True,
        **fields
    )
