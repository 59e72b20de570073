"""
Queue engine.
Contains the controller, ETA estimation, service-time tracking, audit and
notification fan-out.
"""

from visitqueue.engine.audit import AuditLog
from visitqueue.engine.controller import QueueController
from visitqueue.engine.eta import estimate_eta, rank_entries, round_half_up
from visitqueue.engine.fanout import NotificationFanOut, NullPublisher, QueuePublisher
from visitqueue.engine.tracker import MovingAverageTracker, TrackerUpdate, elapsed_minutes

__all__ = [
    "QueueController",
    "AuditLog",
    "NotificationFanOut",
    "NullPublisher",
    "QueuePublisher",
    "MovingAverageTracker",
    "TrackerUpdate",
    "elapsed_minutes",
    "estimate_eta",
    "rank_entries",
    "round_half_up",
]
