"""
WebSocket connection manager for real-time queue updates.

Each connection belongs to an authenticated subject and may subscribe to any
number of server channels. Server channels receive full queue snapshots;
"called" notices go only to the subject's own connections.
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from uuid import UUID

from fastapi import WebSocket, WebSocketDisconnect

from visitqueue.engine.controller import QueueController
from visitqueue.exceptions import QueueServiceError
from visitqueue.types.events import QueueEvent, WebSocketMessage

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class ConnectionInfo:
    """Information about a WebSocket connection."""

    websocket: WebSocket
    subject: str
    subscribed_servers: set[UUID] = field(default_factory=set)
    # Serializes sends; held by a subscribe until its snapshot is out
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class WebSocketManager:
    """
    Manager for WebSocket connections.

    Implements the queue publisher used by notification fan-out. A connection
    whose send fails is dropped; the failure is reported to the caller as a
    count and never raised.
    """

    def __init__(self):
        # Connections by subject
        self._connections: dict[str, list[ConnectionInfo]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, subject: str) -> ConnectionInfo:
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The WebSocket connection.
            subject: The authenticated caller.

        Returns:
            ConnectionInfo for the new connection.
        """
        await websocket.accept()

        connection = ConnectionInfo(websocket=websocket, subject=subject)

        async with self._lock:
            self._connections[subject].append(connection)

        logger.info("WebSocket connected", extra={"subject": subject})
        return connection

    async def disconnect(self, connection: ConnectionInfo) -> None:
        """Forget a connection. Safe to call more than once."""
        async with self._lock:
            subject_connections = self._connections.get(connection.subject, [])
            if connection in subject_connections:
                subject_connections.remove(connection)
            if not subject_connections:
                self._connections.pop(connection.subject, None)

        logger.info("WebSocket disconnected", extra={"subject": connection.subject})

    def subscribe(self, connection: ConnectionInfo, server_id: UUID) -> None:
        connection.subscribed_servers.add(server_id)

    def unsubscribe(self, connection: ConnectionInfo, server_id: UUID) -> None:
        connection.subscribed_servers.discard(server_id)

    async def _deliver(self, connections: list[ConnectionInfo], message: WebSocketMessage) -> int:
        """Send to each connection, dropping the ones that fail."""
        if not connections:
            return 0

        message_json = message.model_dump_json()
        disconnected = []
        for connection in connections:
            try:
                async with connection.send_lock:
                    await connection.websocket.send_text(message_json)
            except Exception as e:
                logger.warning(
                    "Failed to send WebSocket message",
                    extra={
                        "subject": connection.subject,
                        "message_type": message.type,
                        "error": str(e),
                    },
                )
                disconnected.append(connection)

        for connection in disconnected:
            await self.disconnect(connection)
        return len(disconnected)

    async def broadcast_to_server(self, server_id: UUID, message: WebSocketMessage) -> int:
        """
        Send a message to every connection subscribed to a server.

        Returns:
            Number of connections the message could not be delivered to.
        """
        async with self._lock:
            connections = [
                connection
                for subject_connections in self._connections.values()
                for connection in subject_connections
                if server_id in connection.subscribed_servers
            ]
        return await self._deliver(connections, message)

    async def send_to_consumer(self, consumer_id: str, message: WebSocketMessage) -> int:
        """
        Send a message to every connection of one subject.

        Returns:
            Number of connections the message could not be delivered to.
        """
        async with self._lock:
            connections = list(self._connections.get(consumer_id, []))
        return await self._deliver(connections, message)

    async def send_to_connection(
        self,
        connection: ConnectionInfo,
        message: WebSocketMessage,
    ) -> bool:
        """
        Send a message to a specific connection.

        Returns:
            True if sent successfully, False otherwise.
        """
        return await self._deliver([connection], message) == 0

    def get_connection_count(self, subject: str | None = None) -> int:
        """
        Get the number of active connections.

        Args:
            subject: Optional subject filter.
        """
        if subject is not None:
            return len(self._connections.get(subject, []))
        return sum(len(conns) for conns in self._connections.values())


# Global WebSocket manager instance
_ws_manager: WebSocketManager | None = None


def get_ws_manager() -> WebSocketManager:
    """Get or create the WebSocket manager instance."""
    global _ws_manager
    if _ws_manager is None:
        _ws_manager = WebSocketManager()
    return _ws_manager


async def subscribe_with_snapshot(
    manager: WebSocketManager,
    connection: ConnectionInfo,
    controller: QueueController,
    server_id: UUID,
) -> None:
    """
    Join a server channel and send the current snapshot.

    The connection is subscribed before the view is loaded, and its send lock
    is held until the snapshot is out. A mutation committing meanwhile
    broadcasts a newer view that is delivered after this one.
    """
    async with connection.send_lock:
        manager.subscribe(connection, server_id)
        try:
            view = await controller.get_server_view(server_id)
        except QueueServiceError:
            manager.unsubscribe(connection, server_id)
            raise

        await connection.websocket.send_json({
            "type": "subscribed",
            "server_id": str(server_id),
        })
        message = WebSocketMessage.from_event(QueueEvent.queue_updated(view))
        await connection.websocket.send_text(message.model_dump_json())


async def websocket_handler(
    websocket: WebSocket,
    subject: str,
    controller: QueueController,
    manager: WebSocketManager | None = None,
) -> None:
    """
    Handle a WebSocket connection for queue updates.

    Client messages:
        {"action": "subscribe", "server_id": "..."}: join a server channel;
            the current snapshot is sent immediately.
        {"action": "unsubscribe", "server_id": "..."}
        {"action": "ping"}

    Args:
        websocket: The WebSocket connection.
        subject: The authenticated caller.
        controller: Used to load the snapshot on subscribe.
        manager: Connection registry. Defaults to the global one.
    """
    manager = manager or get_ws_manager()
    connection = await manager.connect(websocket, subject)

    try:
        while True:
            data = await websocket.receive_text()

            try:
                message = json.loads(data)
                action = message.get("action")

                if action == "subscribe":
                    server_id = UUID(message.get("server_id"))
                    await subscribe_with_snapshot(manager, connection, controller, server_id)

                elif action == "unsubscribe":
                    server_id = UUID(message.get("server_id"))
                    manager.unsubscribe(connection, server_id)
                    await websocket.send_json({
                        "type": "unsubscribed",
                        "server_id": str(server_id),
                    })

                elif action == "ping":
                    await websocket.send_json({"type": "pong"})

                else:
                    await websocket.send_json({
                        "type": "error",
                        "message": f"Unknown action: {action!r}",
                    })

            except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
                await websocket.send_json({
                    "type": "error",
                    "message": f"Invalid message: {e}",
                })
            except QueueServiceError as e:
                await websocket.send_json({
                    "type": "error",
                    "error": e.code,
                    "message": str(e),
                })

    except WebSocketDisconnect:
        pass
    finally:
        await manager.disconnect(connection)
