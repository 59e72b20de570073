"""
PostgreSQL queue store.
Implements the queue store contract with SQLAlchemy async sessions.
"""

import logging
from collections.abc import AsyncIterator, Collection
from contextlib import asynccontextmanager
from datetime import date, datetime
from uuid import UUID

from sqlalchemy import and_, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from visitqueue.constants import ACTIVE_STATUSES, EntryStatus
from visitqueue.exceptions import (
    AlreadyQueued,
    ConcurrencyConflict,
    QueueServiceError,
    StoreUnavailable,
)
from visitqueue.db.connection import close_db
from visitqueue.db.models import AuditLogEntry, QueueEntryRecord, ServerRecord
from visitqueue.types.audit import AuditRecord
from visitqueue.types.queue import QueueEntry, Server

logger = logging.getLogger(__name__)


class QueueRepository:
    """
    Repository for queue database operations within one transaction.

    Implements atomic operations for:
    - Per-server serialization with SELECT ... FOR UPDATE on the server row
    - Admission with INSERT ... ON CONFLICT DO NOTHING against the unique indexes
    - Status transitions as conditional UPDATE ... WHERE status IN (...) RETURNING
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session (inside a transaction).
        """
        self._session = session

    # -------------------- servers --------------------

    async def lock_server(self, server_id: UUID) -> Server | None:
        """
        Lock the server row until the transaction ends.

        Args:
            server_id: The server UUID.

        Returns:
            The Server or None if not found.
        """
        stmt = select(ServerRecord).where(ServerRecord.id == server_id).with_for_update()
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        return record.to_domain() if record is not None else None

    async def get_server(self, server_id: UUID) -> Server | None:
        stmt = select(ServerRecord).where(ServerRecord.id == server_id)
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        return record.to_domain() if record is not None else None

    async def list_servers(self, accepting_only: bool = False) -> list[Server]:
        stmt = select(ServerRecord).order_by(ServerRecord.department, ServerRecord.name)
        if accepting_only:
            stmt = stmt.where(ServerRecord.is_accepting.is_(True))
        result = await self._session.execute(stmt)
        return [record.to_domain() for record in result.scalars().all()]

    async def set_server_accepting(
        self,
        server_id: UUID,
        is_accepting: bool,
    ) -> Server | None:
        stmt = (
            update(ServerRecord)
            .where(ServerRecord.id == server_id)
            .values(is_accepting=is_accepting)
            .returning(ServerRecord)
        )
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        return record.to_domain() if record is not None else None

    async def save_service_history(
        self,
        server_id: UUID,
        recent_service_minutes: list[int],
        average_service_minutes: int,
    ) -> None:
        stmt = (
            update(ServerRecord)
            .where(ServerRecord.id == server_id)
            .values(
                recent_service_minutes=recent_service_minutes,
                average_service_minutes=average_service_minutes,
            )
        )
        await self._session.execute(stmt)

    # -------------------- entries --------------------

    async def get_entry(self, entry_id: UUID) -> QueueEntry | None:
        stmt = select(QueueEntryRecord).where(QueueEntryRecord.id == entry_id)
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        return record.to_domain() if record is not None else None

    async def max_sequence_number(self, server_id: UUID, service_day: date) -> int:
        stmt = select(func.max(QueueEntryRecord.sequence_number)).where(
            and_(
                QueueEntryRecord.server_id == server_id,
                QueueEntryRecord.service_day == service_day,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def insert_entry(self, entry: QueueEntry) -> QueueEntry:
        """
        Insert a new waiting entry.

        Uses INSERT ... ON CONFLICT DO NOTHING so a violation of any unique
        index leaves the transaction usable; the cause is then resolved by
        checking whether the consumer already holds an active entry.

        Args:
            entry: The entry to insert.

        Returns:
            The stored entry.

        Raises:
            AlreadyQueued: The consumer already holds an active entry.
            ConcurrencyConflict: The sequence number was taken concurrently.
        """
        stmt = (
            insert(QueueEntryRecord)
            .values(
                id=entry.id,
                consumer_id=entry.consumer_id,
                server_id=entry.server_id,
                service_day=entry.service_day,
                sequence_number=entry.sequence_number,
                status=entry.status,
                joined_at=entry.joined_at,
            )
            .on_conflict_do_nothing()
            .returning(QueueEntryRecord)
        )
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()

        if record is not None:
            logger.info(
                "Created queue entry",
                extra={
                    "entry_id": str(record.id),
                    "server_id": str(record.server_id),
                    "sequence_number": record.sequence_number,
                },
            )
            return record.to_domain()

        if await self.active_entry_for_consumer(entry.consumer_id) is not None:
            raise AlreadyQueued(entry.consumer_id)
        raise ConcurrencyConflict(
            f"Sequence number {entry.sequence_number} already issued for server '{entry.server_id}'"
        )

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
        Conditionally move an entry to a new status.

        Args:
            entry_id: The entry UUID.
            expected: Statuses the entry must currently be in.
            status: The new status.
            serving_started_at: Stamp to set, if any.
            completed_at: Stamp to set, if any.

        Returns:
            Updated entry or None if the guard did not match.
        """
        values: dict = {"status": status}
        if serving_started_at is not None:
            values["serving_started_at"] = serving_started_at
        if completed_at is not None:
            values["completed_at"] = completed_at

        stmt = (
            update(QueueEntryRecord)
            .where(
                and_(
                    QueueEntryRecord.id == entry_id,
                    QueueEntryRecord.status.in_(list(expected)),
                )
            )
            .values(**values)
            .returning(QueueEntryRecord)
            .execution_options(synchronize_session=False)
        )

        try:
            # Savepoint so a uq_serving_per_server violation does not abort the transaction
            async with self._session.begin_nested():
                result = await self._session.execute(stmt)
                record = result.scalar_one_or_none()
        except IntegrityError as e:
            raise ConcurrencyConflict(
                f"Entry '{entry_id}' could not move to {status}: {e.orig}"
            ) from e

        if record is None:
            return None

        logger.info(
            "Queue entry transitioned",
            extra={"entry_id": str(entry_id), "status": status.value},
        )
        return record.to_domain()

    async def find_serving(self, server_id: UUID) -> QueueEntry | None:
        stmt = select(QueueEntryRecord).where(
            and_(
                QueueEntryRecord.server_id == server_id,
                QueueEntryRecord.status == EntryStatus.SERVING,
            )
        )
        result = await self._session.execute(stmt)
        record = result.scalars().first()
        return record.to_domain() if record is not None else None

    async def oldest_waiting(self, server_id: UUID) -> QueueEntry | None:
        stmt = (
            select(QueueEntryRecord)
            .where(
                and_(
                    QueueEntryRecord.server_id == server_id,
                    QueueEntryRecord.status == EntryStatus.WAITING,
                )
            )
            .order_by(QueueEntryRecord.joined_at.asc(), QueueEntryRecord.sequence_number.asc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        record = result.scalar_one_or_none()
        return record.to_domain() if record is not None else None

    async def list_active_entries(self, server_id: UUID) -> list[QueueEntry]:
        stmt = (
            select(QueueEntryRecord)
            .where(
                and_(
                    QueueEntryRecord.server_id == server_id,
                    QueueEntryRecord.status.in_(list(ACTIVE_STATUSES)),
                )
            )
            .order_by(QueueEntryRecord.joined_at.asc(), QueueEntryRecord.sequence_number.asc())
        )
        result = await self._session.execute(stmt)
        return [record.to_domain() for record in result.scalars().all()]

    async def active_entry_for_consumer(self, consumer_id: str) -> QueueEntry | None:
        stmt = select(QueueEntryRecord).where(
            and_(
                QueueEntryRecord.consumer_id == consumer_id,
                QueueEntryRecord.status.in_(list(ACTIVE_STATUSES)),
            )
        )
        result = await self._session.execute(stmt)
        record = result.scalars().first()
        return record.to_domain() if record is not None else None

    async def count_waiting_through(
        self,
        server_id: UUID,
        joined_at: datetime,
        sequence_number: int,
    ) -> int:
        stmt = select(func.count()).select_from(QueueEntryRecord).where(
            and_(
                QueueEntryRecord.server_id == server_id,
                QueueEntryRecord.status == EntryStatus.WAITING,
                or_(
                    QueueEntryRecord.joined_at < joined_at,
                    and_(
                        QueueEntryRecord.joined_at == joined_at,
                        QueueEntryRecord.sequence_number <= sequence_number,
                    ),
                ),
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def count_waiting(self, server_id: UUID) -> int:
        stmt = select(func.count()).select_from(QueueEntryRecord).where(
            and_(
                QueueEntryRecord.server_id == server_id,
                QueueEntryRecord.status == EntryStatus.WAITING,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar() or 0

    async def count_by_status(
        self,
        service_day: date,
        server_id: UUID | None = None,
    ) -> dict[EntryStatus, int]:
        filters = [QueueEntryRecord.service_day == service_day]
        if server_id is not None:
            filters.append(QueueEntryRecord.server_id == server_id)

        stmt = (
            select(QueueEntryRecord.status, func.count())
            .where(and_(*filters))
            .group_by(QueueEntryRecord.status)
        )
        result = await self._session.execute(stmt)
        counts = {status: 0 for status in EntryStatus}
        for status, count in result.all():
            counts[EntryStatus(status)] = count
        return counts

    # -------------------- audit --------------------

    async def append_audit(self, record: AuditRecord) -> None:
        self._session.add(AuditLogEntry.from_domain(record))
        await self._session.flush()

    async def list_audit(self, since: datetime, limit: int) -> list[AuditRecord]:
        stmt = (
            select(AuditLogEntry)
            .where(AuditLogEntry.timestamp >= since)
            .order_by(AuditLogEntry.timestamp.desc(), AuditLogEntry.seq.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [row.to_domain() for row in result.scalars().all()]

    async def ping(self) -> None:
        await self._session.execute(text("SELECT 1"))


class SqlQueueStore:
    """
    Queue store backed by PostgreSQL.

    Each session is one database transaction with a bounded lock wait, so a
    contended server lock surfaces as StoreUnavailable instead of blocking.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_timeout_seconds: float = 5.0,
    ):
        self._session_factory = session_factory
        self._lock_timeout_ms = int(lock_timeout_seconds * 1000)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[QueueRepository]:
        """Open a transaction; commit on clean exit, roll back on error."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        text(f"SET LOCAL lock_timeout = {self._lock_timeout_ms}")
                    )
                    yield QueueRepository(session)
        except QueueServiceError:
            raise
        except IntegrityError as e:
            raise ConcurrencyConflict(str(e.orig)) from e
        except (DBAPIError, OSError, TimeoutError) as e:
            logger.warning("Queue store operation failed", extra={"error": str(e)})
            raise StoreUnavailable(f"Queue store unavailable: {e}") from e

    async def close(self) -> None:
        await close_db()
