"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class EntryStatus(StrEnum):
    """
    Queue entry lifecycle states.

    State transitions:
    - WAITING -> SERVING (advance / call next)
    - SERVING -> SERVED (complete)
    - WAITING -> SKIPPED, SERVING -> SKIPPED (consumer unreachable)
    - WAITING -> CANCELLED, SERVING -> CANCELLED (cancel)
    """

    WAITING = "waiting"
    SERVING = "serving"
    SERVED = "served"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


# Statuses that count towards the one-active-entry-per-consumer rule
ACTIVE_STATUSES: frozenset[EntryStatus] = frozenset(
    {EntryStatus.WAITING, EntryStatus.SERVING}
)

# Allowed source statuses for each target status
ALLOWED_TRANSITIONS: dict[EntryStatus, frozenset[EntryStatus]] = {
    EntryStatus.SERVING: frozenset({EntryStatus.WAITING}),
    EntryStatus.SERVED: frozenset({EntryStatus.SERVING}),
    EntryStatus.SKIPPED: frozenset({EntryStatus.WAITING, EntryStatus.SERVING}),
    EntryStatus.CANCELLED: frozenset({EntryStatus.WAITING, EntryStatus.SERVING}),
}


class AuditAction(StrEnum):
    """Actions recorded in the audit log."""

    QUEUE_JOIN = "queue.join"
    QUEUE_CANCEL = "queue.cancel"
    ENTRY_SERVING = "entry.serving"
    ENTRY_SERVED = "entry.served"
    ENTRY_SKIPPED = "entry.skipped"
    SERVER_SESSION_START = "server.session_start"
    SERVER_SESSION_STOP = "server.session_stop"


class Role(StrEnum):
    """Roles carried by identity tokens."""

    CONSUMER = "consumer"
    OPERATOR = "operator"
    ADMIN = "admin"


class Permission(StrEnum):
    """Actions checked against a caller's role."""

    JOIN_QUEUE = "queue.join"
    CANCEL_OWN = "queue.cancel_own"
    CANCEL_ANY = "queue.cancel_any"
    ADVANCE = "queue.advance"
    COMPLETE = "queue.complete"
    SKIP = "queue.skip"
    TOGGLE_ACCEPTING = "server.toggle_accepting"
    VIEW_STATS = "stats.view"


ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.CONSUMER: frozenset({Permission.JOIN_QUEUE, Permission.CANCEL_OWN}),
    Role.OPERATOR: frozenset(
        {
            Permission.CANCEL_OWN,
            Permission.CANCEL_ANY,
            Permission.ADVANCE,
            Permission.COMPLETE,
            Permission.SKIP,
            Permission.TOGGLE_ACCEPTING,
            Permission.VIEW_STATS,
        }
    ),
    Role.ADMIN: frozenset(Permission),
}

# Default values
DEFAULT_SERVICE_MINUTES = 15
DEFAULT_SERVICE_WINDOW_SIZE = 20
MAX_TRACKED_SERVICE_MINUTES = 120
ETA_VARIANCE_RATIO = 0.3
ETA_MIN_VARIANCE_MINUTES = 2
RECENT_AUDIT_LIMIT = 50

# API constants
API_V1_PREFIX = "/v1"

# Metrics names
METRIC_QUEUE_DEPTH = "visit_queue_depth"
METRIC_ENTRIES_ADMITTED = "queue_entries_admitted_total"
METRIC_ENTRY_TRANSITIONS = "queue_entry_transitions_total"
METRIC_SERVICE_DURATION = "queue_service_duration_minutes"
METRIC_CONFLICT_RETRIES = "queue_conflict_retries_total"
METRIC_NOTIFICATION_FAILURES = "notification_delivery_failures_total"
METRIC_AUDIT_FAILURES = "audit_write_failures_total"
METRIC_API_REQUESTS = "api_requests_total"
METRIC_API_LATENCY = "api_request_latency_seconds"

# Trace span names
SPAN_ADMIT = "queue.admit"
SPAN_ADVANCE = "queue.advance"
SPAN_COMPLETE = "queue.complete"
SPAN_SKIP = "queue.skip"
SPAN_CANCEL = "queue.cancel"
SPAN_SET_ACCEPTING = "server.set_accepting"

# WebSocket event types
WS_EVENT_QUEUE_UPDATED = "queue.updated"
WS_EVENT_CONSUMER_CALLED = "queue.called"
WS_EVENT_SERVER_SESSION = "server.session_updated"

CALLED_MESSAGE = "It is your turn. Please proceed to the service desk."
