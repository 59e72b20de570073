"""
Append-only audit trail.

Records are written after the transition they describe has committed, in a
session of their own. A failed write is logged and counted but never undoes
or fails the business operation.
"""

import logging
from datetime import datetime

from visitqueue.db.base import QueueStore
from visitqueue.observability.metrics import MetricsCollector, get_metrics
from visitqueue.types.audit import AuditRecord

logger = logging.getLogger(__name__)


class AuditLog:
    """Writes and reads audit records through the queue store."""

    def __init__(self, store: QueueStore, metrics: MetricsCollector | None = None):
        self._store = store
        self._metrics = metrics or get_metrics()

    async def append(self, record: AuditRecord) -> bool:
        """
        Persist one audit record.

        Returns:
            bool: True if the record was written.
        """
        try:
            async with self._store.session() as session:
                await session.append_audit(record)
        except Exception as e:
            logger.error(
                "Failed to write audit record",
                extra={
                    "audit_id": str(record.id),
                    "action": record.action.value,
                    "actor": record.actor,
                    "error": str(e),
                },
            )
            self._metrics.record_audit_failure(record.action.value)
            return False

        logger.debug(
            "Audit record written",
            extra={"action": record.action.value, "actor": record.actor},
        )
        return True

    async def recent(self, since: datetime, limit: int) -> list[AuditRecord]:
        """Records at or after `since`, newest first."""
        async with self._store.session() as session:
            return await session.list_audit(since, limit)
