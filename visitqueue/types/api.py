"""
API request and response type definitions.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from visitqueue.types.queue import PositionedEntry, ServerSummary


class JoinQueueRequest(BaseModel):
    """Request body for joining a server's queue."""

    server_id: UUID = Field(..., description="Server to queue for")


class SetAcceptingRequest(BaseModel):
    """Request body for opening or closing a server to new entries."""

    is_accepting: bool = Field(..., description="Whether the server admits new entries")


class EntryResponse(BaseModel):
    """A single entry with live position and ETA."""

    entry: PositionedEntry
    message: str


class ConsumerStatusResponse(BaseModel):
    """The caller's active entry, if any."""

    entry: PositionedEntry | None
    message: str | None = None


class ServerListResponse(BaseModel):
    """Servers in the directory."""

    servers: list[ServerSummary]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    store: str
    timestamp: datetime


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
    retryable: bool = False
