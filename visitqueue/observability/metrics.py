"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from visitqueue.constants import (
    METRIC_API_LATENCY,
    METRIC_API_REQUESTS,
    METRIC_AUDIT_FAILURES,
    METRIC_CONFLICT_RETRIES,
    METRIC_ENTRIES_ADMITTED,
    METRIC_ENTRY_TRANSITIONS,
    METRIC_NOTIFICATION_FAILURES,
    METRIC_QUEUE_DEPTH,
    METRIC_SERVICE_DURATION,
)

# Global metrics instance
_metrics: "MetricsCollector | None" = None


class MetricsCollector:
    """
    Prometheus metrics collector for the visit queue.

    Collects metrics for:
    - Waiting queue depth per server
    - Admissions and status transitions
    - Observed service durations
    - Conflict retries and best-effort side effect failures
    - API requests
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional custom registry. Uses default if not provided.
        """
        self._registry = registry or REGISTRY

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of waiting entries per server",
            ["server_id"],
            registry=self._registry,
        )

        self.entries_admitted = Counter(
            METRIC_ENTRIES_ADMITTED,
            "Total number of entries admitted",
            ["server_id"],
            registry=self._registry,
        )

        self.entry_transitions = Counter(
            METRIC_ENTRY_TRANSITIONS,
            "Total number of entry status transitions",
            ["server_id", "status"],
            registry=self._registry,
        )

        self.service_duration = Histogram(
            METRIC_SERVICE_DURATION,
            "Observed service duration in minutes",
            ["server_id"],
            buckets=(1, 2, 5, 10, 15, 20, 30, 45, 60, 90, 120),
            registry=self._registry,
        )

        self.conflict_retries = Counter(
            METRIC_CONFLICT_RETRIES,
            "Total number of operations retried after a concurrency conflict",
            ["operation"],
            registry=self._registry,
        )

        self.notification_failures = Counter(
            METRIC_NOTIFICATION_FAILURES,
            "Total number of failed real-time notifications",
            ["kind"],
            registry=self._registry,
        )

        self.audit_failures = Counter(
            METRIC_AUDIT_FAILURES,
            "Total number of audit records that could not be written",
            ["action"],
            registry=self._registry,
        )

        self.api_requests = Counter(
            METRIC_API_REQUESTS,
            "Total number of API requests",
            ["method", "endpoint", "status"],
            registry=self._registry,
        )

        self.api_latency = Histogram(
            METRIC_API_LATENCY,
            "API request latency in seconds",
            ["method", "endpoint"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
            registry=self._registry,
        )

    def record_admitted(self, server_id: str) -> None:
        """Record an admission."""
        self.entries_admitted.labels(server_id=server_id).inc()

    def record_transition(self, server_id: str, status: str) -> None:
        """Record an entry entering a new status."""
        self.entry_transitions.labels(server_id=server_id, status=status).inc()

    def record_service_duration(self, server_id: str, minutes: int) -> None:
        self.service_duration.labels(server_id=server_id).observe(minutes)

    def record_conflict_retry(self, operation: str) -> None:
        self.conflict_retries.labels(operation=operation).inc()

    def record_notification_failure(self, kind: str, count: int = 1) -> None:
        self.notification_failures.labels(kind=kind).inc(count)

    def record_audit_failure(self, action: str) -> None:
        self.audit_failures.labels(action=action).inc()

    def update_queue_depth(self, server_id: str, depth: int) -> None:
        """Update the waiting count for a server."""
        self.queue_depth.labels(server_id=server_id).set(depth)

    def record_api_request(
        self,
        method: str,
        endpoint: str,
        status: int,
        duration_seconds: float,
    ) -> None:
        """Record an API request."""
        self.api_requests.labels(
            method=method,
            endpoint=endpoint,
            status=str(status),
        ).inc()
        self.api_latency.labels(method=method, endpoint=endpoint).observe(
            duration_seconds
        )

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self._registry)

    def get_content_type(self) -> str:
        """Get the content type for metrics response."""
        return CONTENT_TYPE_LATEST


def setup_metrics() -> MetricsCollector:
    """
    Set up and return the metrics collector.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics


def get_metrics() -> MetricsCollector:
    """
    Get the metrics collector instance, creating it on first use.

    Returns:
        MetricsCollector: The metrics collector instance.
    """
    if _metrics is None:
        return setup_metrics()
    return _metrics
