"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from visitqueue.observability.logging import (
    bind_caller,
    bind_context,
    bind_server,
    clear_context,
    setup_logging,
)
from visitqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from visitqueue.observability.tracing import create_span, get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_context",
    "bind_caller",
    "bind_server",
    "clear_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "create_span",
]
