"""
Audit record type definitions.

Each audit action carries its own details model; `AuditDetails` is a tagged
union discriminated by the `action` field.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field

from visitqueue.constants import AuditAction, EntryStatus


class QueueJoinDetails(BaseModel):
    action: Literal["queue.join"] = "queue.join"
    entry_id: UUID
    server_id: UUID
    sequence_number: int


class QueueCancelDetails(BaseModel):
    action: Literal["queue.cancel"] = "queue.cancel"
    entry_id: UUID
    server_id: UUID
    previous_status: EntryStatus


class EntryServingDetails(BaseModel):
    action: Literal["entry.serving"] = "entry.serving"
    entry_id: UUID
    server_id: UUID


class EntryServedDetails(BaseModel):
    action: Literal["entry.served"] = "entry.served"
    entry_id: UUID
    server_id: UUID
    service_minutes: int
    tracked: bool


class EntrySkippedDetails(BaseModel):
    action: Literal["entry.skipped"] = "entry.skipped"
    entry_id: UUID
    server_id: UUID
    previous_status: EntryStatus


class ServerSessionStartDetails(BaseModel):
    action: Literal["server.session_start"] = "server.session_start"
    server_id: UUID


class ServerSessionStopDetails(BaseModel):
    action: Literal["server.session_stop"] = "server.session_stop"
    server_id: UUID


AuditDetails = Annotated[
    QueueJoinDetails
    | QueueCancelDetails
    | EntryServingDetails
    | EntryServedDetails
    | EntrySkippedDetails
    | ServerSessionStartDetails
    | ServerSessionStopDetails,
    Field(discriminator="action"),
]

audit_details_adapter: TypeAdapter[AuditDetails] = TypeAdapter(AuditDetails)


class AuditRecord(BaseModel):
    """
    One immutable record per committed state transition.

    Ordering by timestamp is the canonical history.
    """

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    details: AuditDetails
    actor: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def action(self) -> AuditAction:
        """The action tag of the details variant."""
        return AuditAction(self.details.action)

    @classmethod
    def record(
        cls,
        details: AuditDetails,
        actor: str,
        timestamp: datetime | None = None,
    ) -> "AuditRecord":
        """Create a record for the given details."""
        if timestamp is None:
            return cls(details=details, actor=actor)
        return cls(details=details, actor=actor, timestamp=timestamp)
