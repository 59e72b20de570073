"""
In-memory queue store.

Used for tests and single-process deployments. Each primitive runs without
awaiting, so it is atomic with respect to other coroutines on the loop; the
per-server critical section is an asyncio.Lock per server. Writes are recorded
in an undo log and reverted if the session block raises.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Collection
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import date, datetime
from uuid import UUID, uuid4

from visitqueue.constants import ACTIVE_STATUSES, DEFAULT_SERVICE_MINUTES, EntryStatus
from visitqueue.exceptions import AlreadyQueued, ConcurrencyConflict, StoreUnavailable
from visitqueue.types.audit import AuditRecord
from visitqueue.types.queue import QueueEntry, Server

logger = logging.getLogger(__name__)


class InMemoryQueueStore:
    """
    Queue store backed by dictionaries.

    Enforces the same uniqueness rules as the database schema:
    - one active entry per consumer
    - one serving entry per server
    - unique (server, service day, sequence number)
    """

    def __init__(self, lock_timeout_seconds: float = 5.0):
        """
        Initialize an empty store.

        Args:
            lock_timeout_seconds: Maximum wait for a server's critical section.
        """
        self._lock_timeout = lock_timeout_seconds
        self._servers: dict[UUID, Server] = {}
        self._entries: dict[UUID, QueueEntry] = {}
        self._audit: list[AuditRecord] = []
        self._server_locks: dict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    def add_server(
        self,
        name: str,
        department: str = "General",
        is_accepting: bool = True,
        average_service_minutes: int = DEFAULT_SERVICE_MINUTES,
        server_id: UUID | None = None,
    ) -> Server:
        """Register a server in the directory."""
        server = Server(
            id=server_id or uuid4(),
            name=name,
            department=department,
            is_accepting=is_accepting,
            average_service_minutes=average_service_minutes,
        )
        self._servers[server.id] = server
        return replace(server, recent_service_minutes=[])

    @asynccontextmanager
    async def session(self) -> AsyncIterator["InMemoryQueueSession"]:
        """Open a session; commit on clean exit, roll back on error."""
        session = InMemoryQueueSession(self)
        try:
            yield session
        except BaseException:
            session.rollback()
            raise
        finally:
            session.release_locks()

    async def close(self) -> None:
        """Nothing to release."""


class InMemoryQueueSession:
    """One unit of work against an InMemoryQueueStore."""

    def __init__(self, store: InMemoryQueueStore):
        self._store = store
        self._undo: list[Callable[[], None]] = []
        self._held: list[asyncio.Lock] = []
        self._held_ids: set[UUID] = set()

    # -------------------- session lifecycle --------------------

    def rollback(self) -> None:
        """Revert every write made in this session, newest first."""
        for undo in reversed(self._undo):
            undo()
        if self._undo:
            logger.debug("Rolled back in-memory session", extra={"writes": len(self._undo)})
        self._undo.clear()

    def release_locks(self) -> None:
        for lock in self._held:
            lock.release()
        self._held.clear()
        self._held_ids.clear()

    # -------------------- servers --------------------

    async def lock_server(self, server_id: UUID) -> Server | None:
        if server_id not in self._store._servers:
            return None
        if server_id not in self._held_ids:
            lock = self._store._server_locks[server_id]
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._store._lock_timeout)
            except TimeoutError as e:
                raise StoreUnavailable(
                    f"Timed out waiting for server '{server_id}' lock"
                ) from e
            self._held.append(lock)
            self._held_ids.add(server_id)
        return await self.get_server(server_id)

    async def get_server(self, server_id: UUID) -> Server | None:
        server = self._store._servers.get(server_id)
        if server is None:
            return None
        return replace(server, recent_service_minutes=list(server.recent_service_minutes))

    async def list_servers(self, accepting_only: bool = False) -> list[Server]:
        servers = [
            replace(s, recent_service_minutes=list(s.recent_service_minutes))
            for s in self._store._servers.values()
            if s.is_accepting or not accepting_only
        ]
        return sorted(servers, key=lambda s: (s.department, s.name))

    async def set_server_accepting(
        self,
        server_id: UUID,
        is_accepting: bool,
    ) -> Server | None:
        current = self._store._servers.get(server_id)
        if current is None:
            return None
        self._put_server(replace(current, is_accepting=is_accepting))
        return await self.get_server(server_id)

    async def save_service_history(
        self,
        server_id: UUID,
        recent_service_minutes: list[int],
        average_service_minutes: int,
    ) -> None:
        current = self._store._servers[server_id]
        self._put_server(
            replace(
                current,
                recent_service_minutes=list(recent_service_minutes),
                average_service_minutes=average_service_minutes,
            )
        )

    def _put_server(self, server: Server) -> None:
        previous = self._store._servers[server.id]
        self._store._servers[server.id] = server
        self._undo.append(lambda: self._store._servers.__setitem__(server.id, previous))

    # -------------------- entries --------------------

    async def get_entry(self, entry_id: UUID) -> QueueEntry | None:
        entry = self._store._entries.get(entry_id)
        return replace(entry) if entry is not None else None

    async def max_sequence_number(self, server_id: UUID, service_day: date) -> int:
        numbers = [
            e.sequence_number
            for e in self._store._entries.values()
            if e.server_id == server_id and e.service_day == service_day
        ]
        return max(numbers, default=0)

    async def insert_entry(self, entry: QueueEntry) -> QueueEntry:
        for existing in self._store._entries.values():
            if existing.consumer_id == entry.consumer_id and existing.is_active:
                raise AlreadyQueued(entry.consumer_id)
            if (
                existing.server_id == entry.server_id
                and existing.service_day == entry.service_day
                and existing.sequence_number == entry.sequence_number
            ):
                raise ConcurrencyConflict(
                    f"Sequence number {entry.sequence_number} already issued"
                )

        stored = replace(entry)
        self._store._entries[stored.id] = stored
        self._undo.append(lambda: self._store._entries.pop(stored.id, None))
        return replace(stored)

    async def transition_entry(
        self,
        entry_id: UUID,
        expected: Collection[EntryStatus],
        status: EntryStatus,
        *,
        serving_started_at: datetime | None = None,
        completed_at: datetime | None = None,
    ) -> QueueEntry | None:
        current = self._store._entries.get(entry_id)
        if current is None or current.status not in expected:
            return None

        if status == EntryStatus.SERVING:
            other = self._serving_entry(current.server_id)
            if other is not None and other.id != entry_id:
                raise ConcurrencyConflict(
                    f"Server '{current.server_id}' already has a serving entry"
                )

        updated = replace(current, status=status)
        if serving_started_at is not None:
            updated.serving_started_at = serving_started_at
        if completed_at is not None:
            updated.completed_at = completed_at

        self._store._entries[entry_id] = updated
        self._undo.append(lambda: self._store._entries.__setitem__(entry_id, current))
        return replace(updated)

    def _serving_entry(self, server_id: UUID) -> QueueEntry | None:
        for entry in self._store._entries.values():
            if entry.server_id == server_id and entry.status == EntryStatus.SERVING:
                return entry
        return None

    async def find_serving(self, server_id: UUID) -> QueueEntry | None:
        entry = self._serving_entry(server_id)
        return replace(entry) if entry is not None else None

    def _waiting(self, server_id: UUID) -> list[QueueEntry]:
        return sorted(
            (
                e
                for e in self._store._entries.values()
                if e.server_id == server_id and e.status == EntryStatus.WAITING
            ),
            key=lambda e: e.arrival_key,
        )

    async def oldest_waiting(self, server_id: UUID) -> QueueEntry | None:
        waiting = self._waiting(server_id)
        return replace(waiting[0]) if waiting else None

    async def list_active_entries(self, server_id: UUID) -> list[QueueEntry]:
        active = [
            replace(e)
            for e in self._store._entries.values()
            if e.server_id == server_id and e.status in ACTIVE_STATUSES
        ]
        return sorted(active, key=lambda e: e.arrival_key)

    async def active_entry_for_consumer(self, consumer_id: str) -> QueueEntry | None:
        for entry in self._store._entries.values():
            if entry.consumer_id == consumer_id and entry.is_active:
                return replace(entry)
        return None

    async def count_waiting_through(
        self,
        server_id: UUID,
        joined_at: datetime,
        sequence_number: int,
    ) -> int:
        key = (joined_at, sequence_number)
        return sum(1 for e in self._waiting(server_id) if e.arrival_key <= key)

    async def count_waiting(self, server_id: UUID) -> int:
        return len(self._waiting(server_id))

    async def count_by_status(
        self,
        service_day: date,
        server_id: UUID | None = None,
    ) -> dict[EntryStatus, int]:
        counts = {status: 0 for status in EntryStatus}
        for entry in self._store._entries.values():
            if entry.service_day != service_day:
                continue
            if server_id is not None and entry.server_id != server_id:
                continue
            counts[entry.status] += 1
        return counts

    # -------------------- audit --------------------

    async def append_audit(self, record: AuditRecord) -> None:
        self._store._audit.append(record)
        self._undo.append(lambda: self._store._audit.remove(record))

    async def list_audit(self, since: datetime, limit: int) -> list[AuditRecord]:
        records = [r for r in self._store._audit if r.timestamp >= since]
        # Oldest first is stable on append order; reversed, equal timestamps stay newest first
        records.sort(key=lambda r: r.timestamp)
        records.reverse()
        return records[:limit]

    async def ping(self) -> None:
        return None
