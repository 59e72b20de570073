"""
Integration tests for the PostgreSQL queue store.

Requires TEST_DATABASE_URL to point at a disposable database.
"""

import asyncio
from collections.abc import AsyncGenerator
from uuid import uuid4

import pytest
import pytest_asyncio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine

from visitqueue.config import Settings
from visitqueue.constants import EntryStatus
from visitqueue.db import Base, ServerRecord, SqlQueueStore, create_session_factory, get_test_engine
from visitqueue.engine import AuditLog, NotificationFanOut, QueueController
from visitqueue.exceptions import AlreadyQueued, AlreadyServing, ServerUnavailable
from visitqueue.observability.metrics import MetricsCollector
from visitqueue.types.audit import AuditRecord, ServerSessionStartDetails, ServerSessionStopDetails
from visitqueue.types.queue import Server

from conftest import START_TIME, TEST_DATABASE_URL, FakeClock, RecordingPublisher

pytestmark = pytest.mark.skipif(
    TEST_DATABASE_URL is None,
    reason="TEST_DATABASE_URL not set",
)


@pytest_asyncio.fixture
async def async_engine() -> AsyncGenerator[AsyncEngine]:
    """Create the schema on a fresh engine and empty every table."""
    engine = get_test_engine(TEST_DATABASE_URL)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(
            sa.text("TRUNCATE TABLE audit_records, queue_entries, servers CASCADE")
        )

    yield engine

    await engine.dispose()


@pytest.fixture
def sql_store(async_engine: AsyncEngine, test_settings: Settings) -> SqlQueueStore:
    return SqlQueueStore(
        create_session_factory(async_engine),
        lock_timeout_seconds=test_settings.store_lock_timeout_seconds,
    )


@pytest_asyncio.fixture
async def sql_server(async_engine: AsyncEngine) -> Server:
    """An accepting server row."""
    record = ServerRecord(
        id=uuid4(),
        name="Dr. Mehta",
        department="General Medicine",
        is_accepting=True,
        average_service_minutes=15,
        recent_service_minutes=[],
    )
    async with create_session_factory(async_engine)() as session:
        session.add(record)
        await session.commit()
        return record.to_domain()


@pytest.fixture
def sql_controller(
    sql_store: SqlQueueStore,
    publisher: RecordingPublisher,
    clock: FakeClock,
    test_settings: Settings,
    metrics: MetricsCollector,
) -> QueueController:
    return QueueController(
        sql_store,
        fanout=NotificationFanOut(sql_store, publisher, metrics),
        audit=AuditLog(sql_store, metrics),
        clock=clock,
        settings=test_settings,
        metrics=metrics,
    )


class TestSqlQueueStore:
    """Controller operations against PostgreSQL."""

    async def test_full_cycle(
        self,
        sql_controller: QueueController,
        sql_server: Server,
        clock: FakeClock,
    ):
        """Admit, call, and complete, then check the persisted average."""
        first = await sql_controller.admit("patient-a", sql_server.id)
        second = await sql_controller.admit("patient-b", sql_server.id)

        assert (first.position, second.position) == (1, 2)
        assert second.entry.sequence_number == 2

        serving = await sql_controller.advance(sql_server.id, actor="nurse-1")
        assert serving.id == first.entry.id

        clock.advance(minutes=8)
        result = await sql_controller.complete(serving.id, actor="nurse-1")

        assert result.tracked is True
        assert result.average_service_minutes == 8
        view = await sql_controller.get_server_view(sql_server.id)
        assert view.server.average_service_minutes == 8
        assert [e.consumer_id for e in view.ordered_entries] == ["patient-b"]
        assert view.ordered_entries[0].eta.min == 6

    async def test_single_active_entry_per_consumer(
        self,
        sql_controller: QueueController,
        sql_server: Server,
    ):
        await sql_controller.admit("patient-a", sql_server.id)

        with pytest.raises(AlreadyQueued):
            await sql_controller.admit("patient-a", sql_server.id)

    async def test_readmit_after_cancel(
        self,
        sql_controller: QueueController,
        sql_server: Server,
    ):
        admitted = await sql_controller.admit("patient-a", sql_server.id)
        await sql_controller.cancel(admitted.entry.id, requested_by="patient-a")

        again = await sql_controller.admit("patient-a", sql_server.id)

        assert again.entry.sequence_number == 2
        assert again.position == 1

    async def test_concurrent_advances_single_winner(
        self,
        sql_controller: QueueController,
        sql_server: Server,
    ):
        for consumer in ("patient-a", "patient-b", "patient-c"):
            await sql_controller.admit(consumer, sql_server.id)

        results = await asyncio.gather(
            *(sql_controller.advance(sql_server.id, actor=f"nurse-{i}") for i in range(5)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, BaseException)]
        assert len(winners) == 1
        assert winners[0].consumer_id == "patient-a"
        assert all(isinstance(r, AlreadyServing) for r in results if r not in winners)

    async def test_concurrent_admits_get_unique_sequence_numbers(
        self,
        sql_controller: QueueController,
        sql_server: Server,
    ):
        results = await asyncio.gather(
            *(sql_controller.admit(f"patient-{i}", sql_server.id) for i in range(10))
        )

        assert sorted(r.entry.sequence_number for r in results) == list(range(1, 11))
        view = await sql_controller.get_server_view(sql_server.id)
        assert [e.position for e in view.ordered_entries] == list(range(1, 11))

    async def test_closed_server_rejects_admission(
        self,
        sql_controller: QueueController,
        sql_server: Server,
    ):
        summary = await sql_controller.set_accepting(sql_server.id, False, actor="nurse-1")
        assert summary.is_accepting is False

        with pytest.raises(ServerUnavailable):
            await sql_controller.admit("patient-a", sql_server.id)

    async def test_daily_stats_and_audit(
        self,
        sql_controller: QueueController,
        sql_server: Server,
        clock: FakeClock,
    ):
        admitted = await sql_controller.admit("patient-a", sql_server.id)
        clock.advance(minutes=1)
        await sql_controller.skip(admitted.entry.id, actor="nurse-1")

        stats = await sql_controller.daily_stats()

        assert stats.totals[EntryStatus.SKIPPED] == 1
        assert stats.totals[EntryStatus.WAITING] == 0
        assert [r.action.value for r in stats.recent_audit] == ["entry.skipped", "queue.join"]
        assert stats.recent_audit[0].details.previous_status == EntryStatus.WAITING

    async def test_ping(self, sql_controller: QueueController):
        await sql_controller.ping()

    async def test_audit_ties_newest_first(
        self,
        sql_store: SqlQueueStore,
        sql_server: Server,
        metrics: MetricsCollector,
    ):
        """Equal timestamps come back in reverse insertion order, as in memory."""
        audit = AuditLog(sql_store, metrics)
        opened = AuditRecord.record(
            ServerSessionStartDetails(server_id=sql_server.id), "nurse-1", START_TIME
        )
        closed = AuditRecord.record(
            ServerSessionStopDetails(server_id=sql_server.id), "nurse-1", START_TIME
        )
        for record in (opened, closed):
            assert await audit.append(record) is True

        assert [r.id for r in await audit.recent(START_TIME, limit=10)] == [closed.id, opened.id]
