"""
Type definitions for the visit queue service.
Contains input/output type definitions grouped by module.
"""

from visitqueue.types.api import (
    ConsumerStatusResponse,
    EntryResponse,
    ErrorResponse,
    HealthResponse,
    JoinQueueRequest,
    ServerListResponse,
    SetAcceptingRequest,
)
from visitqueue.types.audit import AuditDetails, AuditRecord
from visitqueue.types.events import QueueEvent, WebSocketMessage
from visitqueue.types.queue import (
    AdmitResult,
    CompleteResult,
    DailyStats,
    EtaRange,
    PositionedEntry,
    QueueEntry,
    Server,
    ServerDayStats,
    ServerSummary,
    ServerView,
)

__all__ = [
    # API types
    "JoinQueueRequest",
    "SetAcceptingRequest",
    "EntryResponse",
    "ConsumerStatusResponse",
    "ServerListResponse",
    "HealthResponse",
    "ErrorResponse",
    # Queue types
    "QueueEntry",
    "Server",
    "EtaRange",
    "PositionedEntry",
    "ServerSummary",
    "ServerView",
    "AdmitResult",
    "CompleteResult",
    "ServerDayStats",
    "DailyStats",
    # Audit types
    "AuditDetails",
    "AuditRecord",
    # Event types
    "QueueEvent",
    "WebSocketMessage",
]
