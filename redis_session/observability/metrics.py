"""Prometheus metrics for session store operations.

Metrics live on a private registry so embedding applications can expose
them alongside (or separately from) their own default registry.
"""

import logging

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

# Global registry for metrics
_registry = CollectorRegistry()


session_operations_total = Counter(
    "redis_session_operations_total",
    "Total number of session store operations",
    ["operation", "status"],
    registry=_registry,
)

session_operation_duration_seconds = Histogram(
    "redis_session_operation_duration_seconds",
    "Duration of session store operations in seconds",
    ["operation"],
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
    registry=_registry,
)

connection_events_total = Counter(
    "redis_session_connection_events_total",
    "Total number of client lifecycle events emitted by session stores",
    ["event"],
    registry=_registry,
)


def get_registry() -> CollectorRegistry:
    """Get the metrics registry.

    Returns:
        Prometheus collector registry
    """
    return _registry


def get_metrics_text() -> str:
    """Get metrics in Prometheus text format.

    Returns:
        Metrics in Prometheus exposition format
    """
    return generate_latest(_registry).decode("utf-8")


def record_operation(operation: str, status: str) -> None:
    """Record the outcome of a session store operation.

    Args:
        operation: Operation name (get, set, ttl, destroy, ...)
        status: Outcome (hit, miss, success, error, ...)
    """
    session_operations_total.labels(operation=operation, status=status).inc()


def record_connection_event(event: str) -> None:
    """Record a client lifecycle event."""
    connection_events_total.labels(event=event).inc()


__all__ = [
    "connection_events_total",
    "get_metrics_text",
    "get_registry",
    "record_connection_event",
    "record_operation",
    "session_operation_duration_seconds",
    "session_operations_total",
]
