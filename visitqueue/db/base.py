"""
Queue store contract.

A store hands out sessions. A session is one atomic unit of work: every write
made through it commits together when the `async with` block exits cleanly and
is rolled back if the block raises.

Per-server serialization is explicit: `lock_server` enters the server's
critical section for the rest of the session. Admission and advance call it
before reading the state they depend on. Single-entry transitions use
`transition_entry`, a conditional write guarded by the expected current status.
"""

from collections.abc import Collection
from contextlib import AbstractAsyncContextManager
from datetime import date, datetime
from typing import Protocol
from uuid import UUID

from visitqueue.constants import EntryStatus
from visitqueue.types.audit import AuditRecord
from visitqueue.types.queue import QueueEntry, Server


class QueueSession(Protocol):
    """Operations available inside one store transaction."""

    async def lock_server(self, server_id: UUID) -> Server | None:
        """
        Enter the per-server critical section and return the server.

        Blocks other sessions locking the same server until this session ends.
        Raises StoreUnavailable if the lock cannot be taken in time.
        Returns None if the server does not exist.
        """
        ...

    async def get_server(self, server_id: UUID) -> Server | None: ...

    async def list_servers(self, accepting_only: bool = False) -> list[Server]: ...

    async def set_server_accepting(
        self,
        server_id: UUID,
        is_accepting: bool,
    ) -> Server | None: ...

    async def save_service_history(
        self,
        server_id: UUID,
        recent_service_minutes: list[int],
        average_service_minutes: int,
    ) -> None: ...

    async def get_entry(self, entry_id: UUID) -> QueueEntry | None: ...

    async def max_sequence_number(self, server_id: UUID, service_day: date) -> int:
        """Highest sequence number issued for the server-day, 0 if none."""
        ...

    async def insert_entry(self, entry: QueueEntry) -> QueueEntry:
        """
        Insert a new entry atomically.

        Raises AlreadyQueued if the consumer already holds an active entry and
        ConcurrencyConflict if the sequence number was taken concurrently.
        """
        ...

    async def transition_entry(
        self,
        entry_id: UUID,
        expected: Collection[EntryStatus],
        status: EntryStatus,
        *,
        serving_started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> QueueEntry | None:
        """
        Set the entry's status only if its current status is in `expected`.

        Returns the updated entry, or None if the guard did not match.
        """
        ...

    async def find_serving(self, server_id: UUID) -> QueueEntry | None: ...

    async def oldest_waiting(self, server_id: UUID) -> QueueEntry | None:
        """Waiting entry with the smallest (joined_at, sequence_number)."""
        ...

    async def list_active_entries(self, server_id: UUID) -> list[QueueEntry]:
        """Waiting and serving entries ordered by (joined_at, sequence_number)."""
        ...

    async def active_entry_for_consumer(self, consumer_id: str) -> QueueEntry | None: ...

    async def count_waiting_through(
        self,
        server_id: UUID,
        joined_at: datetime,
        sequence_number: int,
    ) -> int:
        """Waiting entries that arrived at or before the given arrival key."""
        ...

    async def count_waiting(self, server_id: UUID) -> int: ...

    async def count_by_status(
        self,
        service_day: date,
        server_id: UUID | None = None,
    ) -> dict[EntryStatus, int]: ...

    async def append_audit(self, record: AuditRecord) -> None: ...

    async def list_audit(self, since: datetime, limit: int) -> list[AuditRecord]:
        """Audit records at or after `since`, newest first."""
        ...

    async def ping(self) -> None: ...


class QueueStore(Protocol):
    """Factory for queue sessions."""

    def session(self) -> AbstractAsyncContextManager[QueueSession]: ...

    async def close(self) -> None: ...
