"""
Exception types raised by the queue engine.

Errors fall into four groups:
- validation: malformed identifiers, rejected before the store is touched
- precondition: business-rule violations, safe to report verbatim, never retried
- conflict: a concurrent mutation won the race, retried once internally
- transient: the store could not be reached in time, retryable by the caller
"""

from uuid import UUID

from visitqueue.constants import EntryStatus


class QueueServiceError(Exception):
    """Base exception for all queue service errors."""

    code: str = "queue_error"
    retryable: bool = False


class InvalidIdentifier(QueueServiceError):
    """Raised when an identifier is missing or malformed."""

    code = "invalid_identifier"

    def __init__(self, field: str, value: object) -> None:
        self.field = field
        self.value = value
        super().__init__(f"Invalid {field}: {value!r}")


class PreconditionFailed(QueueServiceError):
    """Base class for business-rule violations."""

    code = "precondition_failed"


class ServerNotFound(PreconditionFailed):
    """Raised when a server id does not exist in the directory."""

    code = "server_not_found"

    def __init__(self, server_id: UUID) -> None:
        self.server_id = server_id
        super().__init__(f"Server '{server_id}' not found")


class EntryNotFound(PreconditionFailed):
    """Raised when a queue entry id does not exist."""

    code = "entry_not_found"

    def __init__(self, entry_id: UUID) -> None:
        self.entry_id = entry_id
        super().__init__(f"Queue entry '{entry_id}' not found")


class ServerUnavailable(PreconditionFailed):
    """Raised when admitting to a server that is not accepting."""

    code = "server_unavailable"

    def __init__(self, server_id: UUID) -> None:
        self.server_id = server_id
        super().__init__(f"Server '{server_id}' is not accepting new entries")


class AlreadyQueued(PreconditionFailed):
    """Raised when a consumer already holds an active entry."""

    code = "already_queued"

    def __init__(self, consumer_id: str) -> None:
        self.consumer_id = consumer_id
        super().__init__(
            f"Consumer '{consumer_id}' is already in a queue; cancel the current entry first"
        )


class AlreadyServing(PreconditionFailed):
    """Raised when advancing a server that is already serving someone."""

    code = "already_serving"

    def __init__(self, server_id: UUID) -> None:
        self.server_id = server_id
        super().__init__(
            f"Server '{server_id}' is already serving; complete or skip the current entry first"
        )


class QueueEmpty(PreconditionFailed):
    """Raised when advancing a server with no waiting entries."""

    code = "queue_empty"

    def __init__(self, server_id: UUID) -> None:
        self.server_id = server_id
        super().__init__(f"No entries waiting for server '{server_id}'")


class InvalidState(PreconditionFailed):
    """Raised when an operation is not valid for the entry's current status."""

    code = "invalid_state"

    def __init__(
        self,
        entry_id: UUID,
        current_status: EntryStatus,
        operation: str,
    ) -> None:
        self.entry_id = entry_id
        self.current_status = current_status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} entry '{entry_id}' in state '{current_status}'"
        )


class ConcurrencyConflict(QueueServiceError):
    """Raised when a concurrent mutation invalidated the state read in this session."""

    code = "conflict"
    retryable = True

    def __init__(self, message: str = "Concurrent modification detected") -> None:
        super().__init__(message)


class StoreUnavailable(QueueServiceError):
    """Raised when the store cannot be reached or a lock times out."""

    code = "store_unavailable"
    retryable = True

    def __init__(self, message: str = "Queue store unavailable") -> None:
        super().__init__(message)
