"""
Notification fan-out.

After a mutation commits, the affected server's full ordered view is rebuilt
from the store and published once on that server's channel. Observers replace
their local view wholesale, so a missed message is repaired by the next one.

Delivery is best-effort: nothing in this module raises into the caller.
"""

import logging
from typing import Protocol
from uuid import UUID

from visitqueue.db.base import QueueStore
from visitqueue.engine.views import load_server_view
from visitqueue.observability.metrics import MetricsCollector, get_metrics
from visitqueue.types.events import QueueEvent, WebSocketMessage
from visitqueue.types.queue import QueueEntry, Server

logger = logging.getLogger(__name__)


class QueuePublisher(Protocol):
    """Transport for queue notifications."""

    async def broadcast_to_server(self, server_id: UUID, message: WebSocketMessage) -> int:
        """Send to every observer of a server. Returns the number of failed deliveries."""
        ...

    async def send_to_consumer(self, consumer_id: str, message: WebSocketMessage) -> int:
        """Send to one consumer's connections. Returns the number of failed deliveries."""
        ...


class NullPublisher:
    """Publisher that drops every message."""

    async def broadcast_to_server(self, server_id: UUID, message: WebSocketMessage) -> int:
        return 0

    async def send_to_consumer(self, consumer_id: str, message: WebSocketMessage) -> int:
        return 0


class NotificationFanOut:
    """Builds queue events and hands them to a publisher."""

    def __init__(
        self,
        store: QueueStore,
        publisher: QueuePublisher | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._store = store
        self._publisher = publisher or NullPublisher()
        self._metrics = metrics or get_metrics()

    async def server_changed(self, server_id: UUID) -> None:
        """Publish a fresh snapshot of the server's queue."""
        try:
            async with self._store.session() as session:
                view = await load_server_view(session, server_id)
            if view is None:
                return
            self._metrics.update_queue_depth(str(server_id), view.total_waiting)
            message = WebSocketMessage.from_event(QueueEvent.queue_updated(view))
            failed = await self._publisher.broadcast_to_server(server_id, message)
        except Exception as e:
            self._delivery_failed("queue_updated", e, server_id=str(server_id))
            return
        self._count_failures("queue_updated", failed)

    async def consumer_called(self, entry: QueueEntry) -> None:
        """Tell a consumer their entry has entered service."""
        try:
            message = WebSocketMessage.from_event(QueueEvent.consumer_called(entry))
            failed = await self._publisher.send_to_consumer(entry.consumer_id, message)
        except Exception as e:
            self._delivery_failed(
                "consumer_called",
                e,
                server_id=str(entry.server_id),
                entry_id=str(entry.id),
            )
            return
        self._count_failures("consumer_called", failed)

    async def server_session_changed(self, server: Server) -> None:
        """Announce that a server opened or closed admission."""
        try:
            event = QueueEvent.server_session_updated(
                server.id,
                server.is_accepting,
                server.name,
            )
            failed = await self._publisher.broadcast_to_server(
                server.id,
                WebSocketMessage.from_event(event),
            )
        except Exception as e:
            self._delivery_failed("server_session", e, server_id=str(server.id))
            return
        self._count_failures("server_session", failed)

    def _delivery_failed(self, kind: str, error: Exception, **fields: str) -> None:
        logger.warning(
            "Notification delivery failed",
            extra={"kind": kind, "error": str(error), **fields},
        )
        self._metrics.record_notification_failure(kind)

    def _count_failures(self, kind: str, failed: int) -> None:
        if failed:
            self._metrics.record_notification_failure(kind, failed)
