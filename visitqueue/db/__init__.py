"""
Database module.
Contains the queue store contract, its PostgreSQL and in-memory
implementations, and connection management.
"""

from visitqueue.db.base import QueueSession, QueueStore
from visitqueue.db.connection import (
    close_db,
    create_session_factory,
    get_engine,
    get_test_engine,
    init_db,
)
from visitqueue.db.memory import InMemoryQueueStore
from visitqueue.db.models import AuditLogEntry, Base, QueueEntryRecord, ServerRecord
from visitqueue.db.repository import QueueRepository, SqlQueueStore

__all__ = [
    "QueueSession",
    "QueueStore",
    "InMemoryQueueStore",
    "SqlQueueStore",
    "QueueRepository",
    "get_engine",
    "get_test_engine",
    "create_session_factory",
    "init_db",
    "close_db",
    "Base",
    "ServerRecord",
    "QueueEntryRecord",
    "AuditLogEntry",
]
