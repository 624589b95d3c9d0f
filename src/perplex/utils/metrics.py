"""
Monitoring and observability metrics collection.
"""

import time
from contextlib import contextmanager

import structlog
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

logger = structlog.get_logger()


# Prometheus metrics
exchange_counter = Counter(
    'chat_exchanges_total',
    'Total number of completed exchanges',
    ['mode', 'finish_reason']
)

exchange_duration_histogram = Histogram(
    'chat_exchange_duration_seconds',
    'Wall-clock duration of a streamed exchange',
    ['mode'],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0)
)

streaming_connections_gauge = Gauge(
    'chat_streaming_connections',
    'Number of active streaming connections'
)

tool_call_counter = Counter(
    'chat_tool_calls_total',
    'Total tool calls executed',
    ['tool', 'outcome']
)

error_counter = Counter(
    'chat_errors_total',
    'Total number of errors',
    ['error_category']
)


class MetricsCollector:
    """Collects and manages metrics for monitoring."""

    def record_exchange(self, mode: str, finish_reason: str, duration_seconds: float):
        exchange_counter.labels(mode=mode, finish_reason=finish_reason).inc()
        exchange_duration_histogram.labels(mode=mode).observe(duration_seconds)

    def record_tool_call(self, tool: str, succeeded: bool):
        outcome = "success" if succeeded else "failure"
        tool_call_counter.labels(tool=tool, outcome=outcome).inc()

    def record_error(self, category: str):
        error_counter.labels(error_category=category).inc()

    @contextmanager
    def track_stream(self):
        """Count an open streaming connection for the duration of the block."""
        streaming_connections_gauge.inc()
        start = time.monotonic()
        try:
            yield
        finally:
            streaming_connections_gauge.dec()
            logger.debug("stream_closed", duration_ms=int((time.monotonic() - start) * 1000))

    def render(self):
        """Prometheus exposition body and content type."""
        return generate_latest(), CONTENT_TYPE_LATEST


metrics_collector = MetricsCollector()
