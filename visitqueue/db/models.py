"""
SQLAlchemy database models.
Defines the servers, queue_entries and audit_records tables.
"""

from datetime import date, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum,
    Identity,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from visitqueue.constants import DEFAULT_SERVICE_MINUTES, AuditAction, EntryStatus
from visitqueue.types.audit import AuditRecord, audit_details_adapter
from visitqueue.types.queue import QueueEntry, Server


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class ServerRecord(Base):
    """
    Server directory row.

    `is_accepting` is toggled by operators; `average_service_minutes` and
    `recent_service_minutes` are written only by the queue controller.
    The row doubles as the per-server lock target (SELECT ... FOR UPDATE).
    """

    __tablename__ = "servers"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    department: Mapped[str] = mapped_column(String(255), nullable=False)
    is_accepting: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )
    average_service_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_SERVICE_MINUTES,
    )
    recent_service_minutes: Mapped[list[int]] = mapped_column(
        ARRAY(Integer),
        nullable=False,
        default=list,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def to_domain(self) -> Server:
        return Server(
            id=self.id,
            name=self.name,
            department=self.department,
            is_accepting=self.is_accepting,
            average_service_minutes=self.average_service_minutes,
            recent_service_minutes=list(self.recent_service_minutes or []),
        )

    def __repr__(self) -> str:
        return f"ServerRecord(id={self.id}, name={self.name}, accepting={self.is_accepting})"


class QueueEntryRecord(Base):
    """
    Queue entry row. Authoritative source of truth for entry state.

    Key constraints:
    - one waiting/serving entry per consumer (uq_active_consumer)
    - one serving entry per server (uq_serving_per_server)
    - (server_id, service_day, sequence_number) is unique
    """

    __tablename__ = "queue_entries"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    consumer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    server_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        nullable=False,
        index=True,
    )
    service_day: Mapped[date] = mapped_column(Date, nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[EntryStatus] = mapped_column(
        Enum(
            EntryStatus,
            name="entry_status",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
        default=EntryStatus.WAITING,
    )
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    serving_started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        UniqueConstraint(
            "server_id",
            "service_day",
            "sequence_number",
            name="uq_server_day_sequence",
        ),
        Index(
            "uq_active_consumer",
            "consumer_id",
            unique=True,
            postgresql_where=text("status IN ('waiting', 'serving')"),
        ),
        Index(
            "uq_serving_per_server",
            "server_id",
            unique=True,
            postgresql_where=text("status = 'serving'"),
        ),
        # Index for ordered queue reads
        Index("ix_queue_entries_server_status_joined", "server_id", "status", "joined_at"),
    )

    @classmethod
    def from_domain(cls, entry: QueueEntry) -> "QueueEntryRecord":
        return cls(
            id=entry.id,
            consumer_id=entry.consumer_id,
            server_id=entry.server_id,
            service_day=entry.service_day,
            sequence_number=entry.sequence_number,
            status=entry.status,
            joined_at=entry.joined_at,
            serving_started_at=entry.serving_started_at,
            completed_at=entry.completed_at,
        )

    def to_domain(self) -> QueueEntry:
        return QueueEntry(
            id=self.id,
            consumer_id=self.consumer_id,
            server_id=self.server_id,
            service_day=self.service_day,
            sequence_number=self.sequence_number,
            status=EntryStatus(self.status),
            joined_at=self.joined_at,
            serving_started_at=self.serving_started_at,
            completed_at=self.completed_at,
        )

    def __repr__(self) -> str:
        return (
            f"QueueEntryRecord(id={self.id}, server={self.server_id}, "
            f"seq={self.sequence_number}, status={self.status})"
        )


class AuditLogEntry(Base):
    """Append-only audit history."""

    __tablename__ = "audit_records"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    # Insertion order; breaks timestamp ties
    seq: Mapped[int] = mapped_column(BigInteger, Identity(always=True), nullable=False)
    action: Mapped[AuditAction] = mapped_column(
        Enum(
            AuditAction,
            name="audit_action",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )
    details: Mapped[dict] = mapped_column(JSONB, nullable=False)
    actor: Mapped[str] = mapped_column(String(255), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_audit_records_timestamp", "timestamp", "seq"),
        Index("ix_audit_records_action_timestamp", "action", "timestamp"),
    )

    @classmethod
    def from_domain(cls, record: AuditRecord) -> "AuditLogEntry":
        return cls(
            id=record.id,
            action=record.action,
            details=record.details.model_dump(mode="json"),
            actor=record.actor,
            timestamp=record.timestamp,
        )

    def to_domain(self) -> AuditRecord:
        return AuditRecord(
            id=self.id,
            details=audit_details_adapter.validate_python(self.details),
            actor=self.actor,
            timestamp=self.timestamp,
        )
