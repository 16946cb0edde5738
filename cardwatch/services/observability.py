"""
CardWatch — Observability Layer

Provides:
- Structured JSON logging
- Prometheus metrics
- Request correlation IDs
"""

import logging
import time
from contextvars import ContextVar
from typing import Any, Dict, Optional

from fastapi import Request, Response
from prometheus_client import Counter, Histogram
from pythonjsonlogger import jsonlogger

from cardwatch.config import settings

APP_VERSION = "1.0.0"

# ===========================================================================
# Context Variables (for request correlation)
# ===========================================================================
REQUEST_ID_CTX: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return REQUEST_ID_CTX.get()


def set_request_id(request_id: str) -> None:
    """Set the request ID in context."""
    REQUEST_ID_CTX.set(request_id)


# ===========================================================================
# Structured Logging
# ===========================================================================
class StructuredLogFormatter(jsonlogger.JsonFormatter):
    """Custom JSON log formatter with additional context fields."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any],
    ) -> None:
        """Add context variables to log record."""
        super().add_fields(log_record, record, message_dict)

        request_id = get_request_id()
        if request_id:
            log_record["request_id"] = request_id

        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["env"] = settings.APP_ENV
        log_record["service"] = settings.APP_NAME
        log_record["version"] = APP_VERSION


def setup_logging() -> None:
    """Configure structured JSON logging for the application."""
    if not settings.STRUCTURED_LOGGING_ENABLED:
        logging.basicConfig(level=settings.LOG_LEVEL)
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(settings.LOG_LEVEL)

    # Remove default handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(StructuredLogFormatter())
    root_logger.addHandler(console_handler)

    for logger_name in [
        "cardwatch",
        "fastapi",
        "uvicorn",
        "sqlalchemy",
    ]:
        logging.getLogger(logger_name).setLevel(settings.LOG_LEVEL)


# ===========================================================================
# Prometheus Metrics
# ===========================================================================
class Metrics:
    """Application metrics collector."""

    # Request metrics
    http_requests_total = Counter(
        "cardwatch_http_requests_total",
        "Total HTTP requests",
        ["method", "endpoint", "status"],
    )

    http_request_duration_seconds = Histogram(
        "cardwatch_http_request_duration_seconds",
        "HTTP request duration in seconds",
        ["method", "endpoint"],
        buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    )

    # Detection metrics
    detection_runs_total = Counter(
        "cardwatch_detection_runs_total",
        "Misuse detection passes",
        ["outcome"],  # complete, partial, empty
    )

    detection_duration_seconds = Histogram(
        "cardwatch_detection_duration_seconds",
        "Misuse detection pass duration",
        buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
    )

    cards_flagged_total = Counter(
        "cardwatch_cards_flagged_total",
        "Cards flagged for potential misuse",
    )

    rule_violations_total = Counter(
        "cardwatch_rule_violations_total",
        "Rule violations by field",
        ["field"],
    )

    rules_skipped_total = Counter(
        "cardwatch_rules_skipped_total",
        "Malformed rules skipped during evaluation",
        ["reason"],  # bad_value, bad_operator, unknown_field
    )

    # Distance provider metrics
    distance_lookups_total = Counter(
        "cardwatch_distance_lookups_total",
        "Distance provider lookups",
        ["outcome"],  # ok, unknown, error, timeout
    )


# ===========================================================================
# Middleware for automatic metric collection
# ===========================================================================
async def metrics_middleware(request: Request, call_next) -> Response:
    """Record HTTP request metrics."""
    start_time = time.perf_counter()
    path = request.url.path
    method = request.method
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
    finally:
        duration = time.perf_counter() - start_time
        Metrics.http_requests_total.labels(
            method=method,
            endpoint=path,
            status=status_code,
        ).inc()
        Metrics.http_request_duration_seconds.labels(
            method=method,
            endpoint=path,
        ).observe(duration)

    return response


# ===========================================================================
# Logging utilities
# ===========================================================================
def log_detection_completed(
    cards_evaluated: int,
    cards_flagged: int,
    rule_count: int,
    duration_ms: float,
    partial: bool = False,
) -> None:
    """Log a finished detection pass and record its metrics."""
    logger = logging.getLogger("cardwatch.detector")
    logger.info(
        "Misuse detection completed",
        extra={
            "cards_evaluated": cards_evaluated,
            "cards_flagged": cards_flagged,
            "rule_count": rule_count,
            "duration_ms": round(duration_ms, 2),
            "partial": partial,
        },
    )

    Metrics.detection_runs_total.labels(outcome="partial" if partial else "complete").inc()
    Metrics.detection_duration_seconds.observe(duration_ms / 1000)
    Metrics.cards_flagged_total.inc(cards_flagged)
