"""
Event type definitions for WebSocket and internal messaging.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from visitqueue.constants import (
    CALLED_MESSAGE,
    WS_EVENT_CONSUMER_CALLED,
    WS_EVENT_QUEUE_UPDATED,
    WS_EVENT_SERVER_SESSION,
)
from visitqueue.types.queue import QueueEntry, ServerView


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueEvent(BaseModel):
    """
    Event emitted after a committed queue mutation.
    Used for WebSocket notifications.
    """

    event_type: str
    server_id: UUID
    timestamp: datetime = Field(default_factory=_utcnow)
    data: dict[str, Any]

    @classmethod
    def queue_updated(cls, view: ServerView) -> "QueueEvent":
        """
        Create a full-snapshot event for a server channel.

        Observers replace their local view with `ordered_entries` wholesale.
        """
        return cls(
            event_type=WS_EVENT_QUEUE_UPDATED,
            server_id=view.server.id,
            data={
                "server_id": str(view.server.id),
                "ordered_entries": [
                    entry.model_dump(mode="json") for entry in view.ordered_entries
                ],
                "total_waiting": view.total_waiting,
            },
        )

    @classmethod
    def consumer_called(cls, entry: QueueEntry) -> "QueueEvent":
        """Create a point-to-point notice for the consumer entering service."""
        return cls(
            event_type=WS_EVENT_CONSUMER_CALLED,
            server_id=entry.server_id,
            data={
                "consumer_id": entry.consumer_id,
                "server_id": str(entry.server_id),
                "entry_id": str(entry.id),
                "sequence_number": entry.sequence_number,
                "message": CALLED_MESSAGE,
            },
        )

    @classmethod
    def server_session_updated(
        cls,
        server_id: UUID,
        is_accepting: bool,
        server_name: str,
    ) -> "QueueEvent":
        """Create a server open/closed event."""
        return cls(
            event_type=WS_EVENT_SERVER_SESSION,
            server_id=server_id,
            data={
                "server_id": str(server_id),
                "is_accepting": is_accepting,
                "server_name": server_name,
            },
        )


class WebSocketMessage(BaseModel):
    """
    Message format for WebSocket communication.
    """

    type: str
    payload: dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_event(cls, event: QueueEvent) -> "WebSocketMessage":
        """Create a WebSocket message from a queue event."""
        return cls(
            type=event.event_type,
            payload=event.data,
            timestamp=event.timestamp,
        )
