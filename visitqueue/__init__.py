"""
Visit Queue Orchestration Service

Per-server FIFO queues for clinic visits: admission, calling the next
consumer, completion, skipping and cancellation, with live positions,
wait-time estimates, an audit trail and real-time notifications.
"""

__version__ = "1.0.0"
