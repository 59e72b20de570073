"""
Queue-related type definitions for internal use.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from visitqueue.constants import ACTIVE_STATUSES, EntryStatus
from visitqueue.types.audit import AuditRecord


@dataclass
class QueueEntry:
    """
    One consumer's request for service at a server.

    Store implementations return these records; only the queue controller
    decides which status transitions to apply.
    """

    id: UUID
    consumer_id: str
    server_id: UUID
    service_day: date
    sequence_number: int
    status: EntryStatus
    joined_at: datetime
    serving_started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        """Check if the entry still occupies the consumer's single active slot."""
        return self.status in ACTIVE_STATUSES

    @property
    def arrival_key(self) -> tuple[datetime, int]:
        """Ordering key: arrival time, ties broken by sequence number."""
        return (self.joined_at, self.sequence_number)


@dataclass
class Server:
    """
    A service-providing unit with single-consumer-at-a-time capacity.
    """

    id: UUID
    name: str
    department: str
    is_accepting: bool
    average_service_minutes: int
    recent_service_minutes: list[int] = field(default_factory=list)


class EtaRange(BaseModel):
    """Estimated minutes until service starts."""

    model_config = ConfigDict(frozen=True)

    min: int
    max: int


class PositionedEntry(BaseModel):
    """A queue entry annotated with its live position and ETA."""

    id: UUID
    consumer_id: str
    server_id: UUID
    sequence_number: int
    status: EntryStatus
    joined_at: datetime
    serving_started_at: datetime | None
    position: int
    eta: EtaRange

    @classmethod
    def from_entry(
        cls,
        entry: QueueEntry,
        position: int,
        eta: EtaRange,
    ) -> "PositionedEntry":
        """Build from a stored entry."""
        return cls(
            id=entry.id,
            consumer_id=entry.consumer_id,
            server_id=entry.server_id,
            sequence_number=entry.sequence_number,
            status=entry.status,
            joined_at=entry.joined_at,
            serving_started_at=entry.serving_started_at,
            position=position,
            eta=eta,
        )


class ServerSummary(BaseModel):
    """Directory view of a server."""

    id: UUID
    name: str
    department: str
    is_accepting: bool
    average_service_minutes: int
    waiting_count: int | None = None

    @classmethod
    def from_server(
        cls,
        server: Server,
        waiting_count: int | None = None,
    ) -> "ServerSummary":
        """Build from a directory record."""
        return cls(
            id=server.id,
            name=server.name,
            department=server.department,
            is_accepting=server.is_accepting,
            average_service_minutes=server.average_service_minutes,
            waiting_count=waiting_count,
        )


class ServerView(BaseModel):
    """Authoritative ordered view of one server's active entries."""

    server: ServerSummary
    ordered_entries: list[PositionedEntry]
    total_waiting: int


class AdmitResult(BaseModel):
    """Outcome of a successful admission."""

    entry: PositionedEntry
    position: int
    eta: EtaRange


class CompleteResult(BaseModel):
    """Outcome of completing service for an entry."""

    entry: PositionedEntry
    service_minutes: int
    tracked: bool
    average_service_minutes: int


class ServerDayStats(BaseModel):
    """Per-server counts for the current service day."""

    server: ServerSummary
    served: int
    waiting: int
    skipped: int


class DailyStats(BaseModel):
    """Summary of the current service day."""

    service_day: date
    totals: dict[EntryStatus, int]
    servers: list[ServerDayStats]
    recent_audit: list[AuditRecord]
