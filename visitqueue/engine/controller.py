"""
Queue controller.

The only component that changes entry status. Every mutation runs in one
store session: admission and advance enter the server's critical section
before reading the state they depend on; complete, skip and cancel apply a
conditional transition guarded by the status they observed. A
ConcurrencyConflict is retried once with a fresh session.

Audit records and notifications are produced after the session commits.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import date, datetime, time, timezone
from typing import TypeVar
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

from visitqueue.config import Settings, get_settings
from visitqueue.constants import (
    ALLOWED_TRANSITIONS,
    RECENT_AUDIT_LIMIT,
    SPAN_ADMIT,
    SPAN_ADVANCE,
    SPAN_CANCEL,
    SPAN_COMPLETE,
    SPAN_SET_ACCEPTING,
    SPAN_SKIP,
    EntryStatus,
)
from visitqueue.db.base import QueueSession, QueueStore
from visitqueue.engine.audit import AuditLog
from visitqueue.engine.eta import estimate_eta
from visitqueue.engine.fanout import NotificationFanOut
from visitqueue.engine.tracker import MovingAverageTracker, elapsed_minutes
from visitqueue.engine.views import load_server_view, position_entry
from visitqueue.exceptions import (
    AlreadyServing,
    ConcurrencyConflict,
    EntryNotFound,
    InvalidIdentifier,
    InvalidState,
    QueueEmpty,
    ServerNotFound,
    ServerUnavailable,
)
from visitqueue.observability.metrics import MetricsCollector, get_metrics
from visitqueue.observability.tracing import create_span
from visitqueue.types.audit import (
    AuditDetails,
    AuditRecord,
    EntryServedDetails,
    EntryServingDetails,
    EntrySkippedDetails,
    QueueCancelDetails,
    QueueJoinDetails,
    ServerSessionStartDetails,
    ServerSessionStopDetails,
)
from visitqueue.types.queue import (
    AdmitResult,
    CompleteResult,
    DailyStats,
    PositionedEntry,
    QueueEntry,
    Server,
    ServerDayStats,
    ServerSummary,
    ServerView,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_CONSUMER_ID_LENGTH = 255


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serving_position(entry: QueueEntry) -> PositionedEntry:
    """Entries that are not waiting have position 0 and a zero ETA."""
    return PositionedEntry.from_entry(entry, 0, estimate_eta(0, 0))


class QueueController:
    """
    Orchestrates admission, advancement and terminal transitions.

    Example:
        controller = QueueController(store, fanout=NotificationFanOut(store, manager))
        result = await controller.admit("patient-42", server_id)
        entry = await controller.advance(server_id, actor="nurse-1")
    """

    def __init__(
        self,
        store: QueueStore,
        *,
        fanout: NotificationFanOut | None = None,
        audit: AuditLog | None = None,
        tracker: MovingAverageTracker | None = None,
        clock: Callable[[], datetime] | None = None,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the controller.

        Args:
            store: The queue store.
            fanout: Notification fan-out. Defaults to one that publishes nowhere.
            audit: Audit log. Defaults to one writing through `store`.
            tracker: Service-time tracker. Defaults to the configured window.
            clock: Returns the current time as an aware datetime.
            settings: Application settings.
            metrics: Metrics collector.
        """
        self._settings = settings or get_settings()
        self._store = store
        self._metrics = metrics or get_metrics()
        self._fanout = fanout or NotificationFanOut(store, metrics=self._metrics)
        self._audit = audit or AuditLog(store, self._metrics)
        self._tracker = tracker or MovingAverageTracker(
            window_size=self._settings.service_window_size,
            default_minutes=self._settings.default_service_minutes,
            max_minutes=self._settings.max_tracked_service_minutes,
        )
        self._clock = clock or _utcnow
        self._tz = ZoneInfo(self._settings.service_timezone)

    @property
    def store(self) -> QueueStore:
        return self._store

    # -------------------- mutations --------------------

    async def admit(
        self,
        consumer_id: str,
        server_id: UUID | str,
        actor: str | None = None,
    ) -> AdmitResult:
        """
        Add a consumer to the tail of a server's queue.

        Args:
            consumer_id: The consumer joining.
            server_id: The server to queue for.
            actor: Who performed the admission. Defaults to the consumer.

        Returns:
            AdmitResult: The new entry with its position and ETA.

        Raises:
            InvalidIdentifier: Malformed consumer or server id.
            ServerNotFound: Unknown server.
            ServerUnavailable: The server is not accepting.
            AlreadyQueued: The consumer already holds an active entry.
        """
        consumer_id = self._validate_consumer_id(consumer_id)
        sid = self._parse_uuid(server_id, "server_id")

        async def work(session: QueueSession) -> PositionedEntry:
            server = await session.lock_server(sid)
            if server is None:
                raise ServerNotFound(sid)
            if not server.is_accepting:
                raise ServerUnavailable(sid)

            now = self._clock()
            day = self.service_day(now)
            sequence_number = await session.max_sequence_number(sid, day) + 1
            entry = await session.insert_entry(
                QueueEntry(
                    id=uuid4(),
                    consumer_id=consumer_id,
                    server_id=sid,
                    service_day=day,
                    sequence_number=sequence_number,
                    status=EntryStatus.WAITING,
                    joined_at=now,
                )
            )
            return await position_entry(session, entry, server)

        with create_span(SPAN_ADMIT, server_id=sid, consumer_id=consumer_id):
            positioned = await self._run("admit", work)

        logger.info(
            "Consumer admitted",
            extra={
                "entry_id": str(positioned.id),
                "server_id": str(sid),
                "sequence_number": positioned.sequence_number,
                "position": positioned.position,
            },
        )
        self._metrics.record_admitted(str(sid))
        await self._record(
            QueueJoinDetails(
                entry_id=positioned.id,
                server_id=sid,
                sequence_number=positioned.sequence_number,
            ),
            actor or consumer_id,
            positioned.joined_at,
        )
        await self._fanout.server_changed(sid)
        return AdmitResult(entry=positioned, position=positioned.position, eta=positioned.eta)

    async def advance(self, server_id: UUID | str, actor: str) -> PositionedEntry:
        """
        Call the next waiting consumer to service.

        Raises:
            ServerNotFound: Unknown server.
            AlreadyServing: The server has an entry in service.
            QueueEmpty: Nobody is waiting.
        """
        sid = self._parse_uuid(server_id, "server_id")

        async def work(session: QueueSession) -> QueueEntry:
            server = await session.lock_server(sid)
            if server is None:
                raise ServerNotFound(sid)
            if await session.find_serving(sid) is not None:
                raise AlreadyServing(sid)

            candidate = await session.oldest_waiting(sid)
            if candidate is None:
                raise QueueEmpty(sid)

            updated = await session.transition_entry(
                candidate.id,
                {EntryStatus.WAITING},
                EntryStatus.SERVING,
                serving_started_at=self._clock(),
            )
            if updated is None:
                raise ConcurrencyConflict(f"Entry '{candidate.id}' changed while advancing")
            return updated

        with create_span(SPAN_ADVANCE, server_id=sid, actor=actor):
            entry = await self._run("advance", work)

        logger.info(
            "Consumer called to service",
            extra={
                "entry_id": str(entry.id),
                "server_id": str(sid),
                "sequence_number": entry.sequence_number,
            },
        )
        self._metrics.record_transition(str(sid), EntryStatus.SERVING.value)
        await self._record(
            EntryServingDetails(entry_id=entry.id, server_id=sid),
            actor,
            entry.serving_started_at,
        )
        await self._fanout.server_changed(sid)
        await self._fanout.consumer_called(entry)
        return _serving_position(entry)

    async def complete(self, entry_id: UUID | str, actor: str) -> CompleteResult:
        """
        Finish service for the entry and feed its duration to the tracker.

        The entry transition and the server's service history commit together.

        Raises:
            EntryNotFound: Unknown entry.
            InvalidState: The entry is not being served.
        """
        eid = self._parse_uuid(entry_id, "entry_id")

        async def work(session: QueueSession) -> tuple[QueueEntry, int, bool, int]:
            entry = await self._require_entry(session, eid)
            server = await session.lock_server(entry.server_id)
            if server is None:
                raise ServerNotFound(entry.server_id)

            completed_at = self._clock()
            previous, updated = await self._transition(
                session,
                eid,
                EntryStatus.SERVED,
                "complete",
                completed_at=completed_at,
            )

            started_at = previous.serving_started_at or previous.joined_at
            minutes = elapsed_minutes(started_at, completed_at)
            update = self._tracker.record(server.recent_service_minutes, minutes)
            if update.tracked:
                await session.save_service_history(
                    server.id,
                    update.recent_service_minutes,
                    update.average_service_minutes,
                )
            return updated, minutes, update.tracked, update.average_service_minutes

        with create_span(SPAN_COMPLETE, entry_id=eid, actor=actor):
            entry, minutes, tracked, average = await self._run("complete", work)

        logger.info(
            "Service completed",
            extra={
                "entry_id": str(eid),
                "server_id": str(entry.server_id),
                "service_minutes": minutes,
                "tracked": tracked,
                "average_service_minutes": average,
            },
        )
        self._metrics.record_transition(str(entry.server_id), EntryStatus.SERVED.value)
        if tracked:
            self._metrics.record_service_duration(str(entry.server_id), minutes)
        await self._record(
            EntryServedDetails(
                entry_id=eid,
                server_id=entry.server_id,
                service_minutes=minutes,
                tracked=tracked,
            ),
            actor,
            entry.completed_at,
        )
        await self._fanout.server_changed(entry.server_id)
        return CompleteResult(
            entry=_serving_position(entry),
            service_minutes=minutes,
            tracked=tracked,
            average_service_minutes=average,
        )

    async def skip(self, entry_id: UUID | str, actor: str) -> PositionedEntry:
        """
        Mark a waiting or serving entry as skipped.

        Raises:
            EntryNotFound: Unknown entry.
            InvalidState: The entry is already terminal.
        """
        eid = self._parse_uuid(entry_id, "entry_id")

        with create_span(SPAN_SKIP, entry_id=eid, actor=actor):
            previous, entry = await self._run(
                "skip",
                lambda session: self._transition(session, eid, EntryStatus.SKIPPED, "skip"),
            )

        logger.info(
            "Entry skipped",
            extra={
                "entry_id": str(eid),
                "server_id": str(entry.server_id),
                "previous_status": previous.status.value,
                "actor": actor,
            },
        )
        self._metrics.record_transition(str(entry.server_id), EntryStatus.SKIPPED.value)
        await self._record(
            EntrySkippedDetails(
                entry_id=eid,
                server_id=entry.server_id,
                previous_status=previous.status,
            ),
            actor,
        )
        await self._fanout.server_changed(entry.server_id)
        return _serving_position(entry)

    async def cancel(self, entry_id: UUID | str, requested_by: str) -> PositionedEntry:
        """
        Withdraw a waiting or serving entry.

        Authorization (owner or operator) is the caller's responsibility.

        Raises:
            EntryNotFound: Unknown entry.
            InvalidState: The entry is already terminal.
        """
        eid = self._parse_uuid(entry_id, "entry_id")

        with create_span(SPAN_CANCEL, entry_id=eid, actor=requested_by):
            previous, entry = await self._run(
                "cancel",
                lambda session: self._transition(session, eid, EntryStatus.CANCELLED, "cancel"),
            )

        logger.info(
            "Entry cancelled",
            extra={
                "entry_id": str(eid),
                "server_id": str(entry.server_id),
                "previous_status": previous.status.value,
                "requested_by": requested_by,
            },
        )
        self._metrics.record_transition(str(entry.server_id), EntryStatus.CANCELLED.value)
        await self._record(
            QueueCancelDetails(
                entry_id=eid,
                server_id=entry.server_id,
                previous_status=previous.status,
            ),
            requested_by,
        )
        await self._fanout.server_changed(entry.server_id)
        return _serving_position(entry)

    async def set_accepting(
        self,
        server_id: UUID | str,
        accepting: bool,
        actor: str,
    ) -> ServerSummary:
        """
        Open or close a server to new admissions.

        Setting the current value is a no-op and writes no audit record.
        Entries already queued are unaffected either way.
        """
        sid = self._parse_uuid(server_id, "server_id")

        async def work(session: QueueSession) -> tuple[Server, int, bool]:
            server = await session.lock_server(sid)
            if server is None:
                raise ServerNotFound(sid)
            waiting = await session.count_waiting(sid)
            if server.is_accepting == accepting:
                return server, waiting, False
            updated = await session.set_server_accepting(sid, accepting)
            if updated is None:
                raise ServerNotFound(sid)
            return updated, waiting, True

        with create_span(SPAN_SET_ACCEPTING, server_id=sid, accepting=accepting):
            server, waiting, changed = await self._run("set_accepting", work)

        if changed:
            logger.info(
                "Server admission toggled",
                extra={"server_id": str(sid), "is_accepting": accepting, "actor": actor},
            )
            details: AuditDetails = (
                ServerSessionStartDetails(server_id=sid)
                if accepting
                else ServerSessionStopDetails(server_id=sid)
            )
            await self._record(details, actor)
            await self._fanout.server_session_changed(server)
        return ServerSummary.from_server(server, waiting_count=waiting)

    # -------------------- queries --------------------

    async def get_server_view(self, server_id: UUID | str) -> ServerView:
        """Ordered active entries of a server with positions and ETAs."""
        sid = self._parse_uuid(server_id, "server_id")
        async with self._store.session() as session:
            view = await load_server_view(session, sid)
        if view is None:
            raise ServerNotFound(sid)
        return view

    async def get_consumer_status(self, consumer_id: str) -> PositionedEntry | None:
        """The consumer's active entry with live position, or None."""
        consumer_id = self._validate_consumer_id(consumer_id)
        async with self._store.session() as session:
            entry = await session.active_entry_for_consumer(consumer_id)
            if entry is None:
                return None
            server = await session.get_server(entry.server_id)
            if server is None:
                raise ServerNotFound(entry.server_id)
            return await position_entry(session, entry, server)

    async def get_entry(self, entry_id: UUID | str) -> QueueEntry:
        eid = self._parse_uuid(entry_id, "entry_id")
        async with self._store.session() as session:
            return await self._require_entry(session, eid)

    async def list_servers(self, accepting_only: bool = False) -> list[ServerSummary]:
        """Directory listing with current waiting counts."""
        async with self._store.session() as session:
            servers = await session.list_servers(accepting_only=accepting_only)
            return [
                ServerSummary.from_server(server, await session.count_waiting(server.id))
                for server in servers
            ]

    async def daily_stats(self) -> DailyStats:
        """
        Summarize the current service day.

        Returns:
            DailyStats: Totals by status, per-server counts and the most
            recent audit records since the start of the day.
        """
        now = self._clock()
        day = self.service_day(now)
        start_of_day = datetime.combine(day, time.min, tzinfo=self._tz)

        async with self._store.session() as session:
            totals = await session.count_by_status(day)
            per_server = []
            for server in await session.list_servers():
                counts = await session.count_by_status(day, server.id)
                # Waiting is a live figure; entries carried over from earlier days count
                waiting = await session.count_waiting(server.id)
                per_server.append(
                    ServerDayStats(
                        server=ServerSummary.from_server(server, waiting_count=waiting),
                        served=counts[EntryStatus.SERVED],
                        waiting=waiting,
                        skipped=counts[EntryStatus.SKIPPED],
                    )
                )
            recent = await session.list_audit(start_of_day, RECENT_AUDIT_LIMIT)

        return DailyStats(
            service_day=day,
            totals=totals,
            servers=per_server,
            recent_audit=recent,
        )

    async def ping(self) -> None:
        """Check that the store answers."""
        async with self._store.session() as session:
            await session.ping()

    def service_day(self, moment: datetime) -> date:
        """Calendar day of `moment` in the service timezone."""
        return moment.astimezone(self._tz).date()

    # -------------------- internals --------------------

    async def _run(self, operation: str, work: Callable[[QueueSession], Awaitable[T]]) -> T:
        """Run `work` in a session, retrying once on a concurrency conflict."""
        try:
            async with self._store.session() as session:
                return await work(session)
        except ConcurrencyConflict as e:
            logger.info(
                "Concurrency conflict, retrying",
                extra={"operation": operation, "error": str(e)},
            )
            self._metrics.record_conflict_retry(operation)

        async with self._store.session() as session:
            return await work(session)

    async def _require_entry(self, session: QueueSession, entry_id: UUID) -> QueueEntry:
        entry = await session.get_entry(entry_id)
        if entry is None:
            raise EntryNotFound(entry_id)
        return entry

    async def _transition(
        self,
        session: QueueSession,
        entry_id: UUID,
        target: EntryStatus,
        operation: str,
        **stamps: datetime,
    ) -> tuple[QueueEntry, QueueEntry]:
        """
        Apply a guarded status change.

        Returns:
            The entry as read before the change, and the updated entry.
        """
        entry = await self._require_entry(session, entry_id)
        if entry.status not in ALLOWED_TRANSITIONS[target]:
            raise InvalidState(entry_id, entry.status, operation)

        updated = await session.transition_entry(entry_id, {entry.status}, target, **stamps)
        if updated is None:
            raise ConcurrencyConflict(f"Entry '{entry_id}' changed during {operation}")
        return entry, updated

    async def _record(
        self,
        details: AuditDetails,
        actor: str,
        timestamp: datetime | None = None,
    ) -> None:
        await self._audit.append(
            AuditRecord.record(details, actor, timestamp or self._clock())
        )

    @staticmethod
    def _parse_uuid(value: UUID | str, field: str) -> UUID:
        if isinstance(value, UUID):
            return value
        try:
            return UUID(str(value))
        except (TypeError, ValueError) as e:
            raise InvalidIdentifier(field, value) from e

    @staticmethod
    def _validate_consumer_id(consumer_id: str) -> str:
        if not isinstance(consumer_id, str):
            raise InvalidIdentifier("consumer_id", consumer_id)
        cleaned = consumer_id.strip()
        if not cleaned or len(cleaned) > MAX_CONSUMER_ID_LENGTH:
            raise InvalidIdentifier("consumer_id", consumer_id)
        return cleaned
