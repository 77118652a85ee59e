"""Observability for the session store: structured logging and metrics."""

from redis_session.observability.logging import (
    CorrelationIDFilter,
    JSONFormatter,
    correlation_id_var,
    get_correlation_id,
    set_correlation_id,
    setup_logging,
)
from redis_session.observability.metrics import (
    get_metrics_text,
    get_registry,
    record_connection_event,
    record_operation,
)

__all__ = [
    "CorrelationIDFilter",
    "JSONFormatter",
    "correlation_id_var",
    "get_correlation_id",
    "get_metrics_text",
    "get_registry",
    "record_connection_event",
    "record_operation",
    "set_correlation_id",
    "setup_logging",
]
