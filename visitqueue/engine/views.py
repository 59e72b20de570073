"""
Read models built from a store session.

Positions and ETAs are derived on every read and never stored.
"""

from uuid import UUID

from visitqueue.constants import EntryStatus
from visitqueue.db.base import QueueSession
from visitqueue.engine.eta import estimate_eta, rank_entries
from visitqueue.types.queue import (
    PositionedEntry,
    QueueEntry,
    Server,
    ServerSummary,
    ServerView,
)


async def build_server_view(session: QueueSession, server: Server) -> ServerView:
    """Ordered active entries of a server with positions and ETAs."""
    entries = await session.list_active_entries(server.id)
    ranked, total_waiting = rank_entries(entries, server.average_service_minutes)
    return ServerView(
        server=ServerSummary.from_server(server, waiting_count=total_waiting),
        ordered_entries=ranked,
        total_waiting=total_waiting,
    )


async def load_server_view(session: QueueSession, server_id: UUID) -> ServerView | None:
    server = await session.get_server(server_id)
    if server is None:
        return None
    return await build_server_view(session, server)


async def position_entry(
    session: QueueSession,
    entry: QueueEntry,
    server: Server,
) -> PositionedEntry:
    """
    Annotate a single entry with its live position.

    Only waiting entries have a non-zero position.
    """
    position = 0
    if entry.status == EntryStatus.WAITING:
        position = await session.count_waiting_through(
            entry.server_id,
            entry.joined_at,
            entry.sequence_number,
        )
    return PositionedEntry.from_entry(
        entry,
        position,
        estimate_eta(position, server.average_service_minutes),
    )
