"""
Wait-time estimation and queue ranking.

Pure functions; no I/O.
"""

import math
from collections.abc import Iterable

from visitqueue.constants import ETA_MIN_VARIANCE_MINUTES, ETA_VARIANCE_RATIO, EntryStatus
from visitqueue.types.queue import EtaRange, PositionedEntry, QueueEntry


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for non-negative input."""
    return math.floor(value + 0.5)


def estimate_eta(position: int, average_service_minutes: int) -> EtaRange:
    """
    Estimate minutes until service begins for a waiting entry.

    Args:
        position: 1-based position among waiting entries. 0 or less means
            the entry is not waiting and gets a zero range.
        average_service_minutes: The server's current moving average.

    Returns:
        EtaRange: base +/- variance, with min clamped at 0.
    """
    if position <= 0:
        return EtaRange(min=0, max=0)

    base = position * average_service_minutes
    variance = max(
        round_half_up(average_service_minutes * ETA_VARIANCE_RATIO),
        ETA_MIN_VARIANCE_MINUTES,
    )
    return EtaRange(min=max(0, base - variance), max=base + variance)


def rank_entries(
    entries: Iterable[QueueEntry],
    average_service_minutes: int,
) -> tuple[list[PositionedEntry], int]:
    """
    Assign positions and ETAs to a server's active entries.

    Waiting entries are numbered 1..n by arrival order. The serving entry,
    if any, is listed first with position 0.

    Returns:
        The ordered entries and the number waiting.
    """
    ordered = sorted(entries, key=lambda e: e.arrival_key)
    serving = [e for e in ordered if e.status == EntryStatus.SERVING]
    waiting = [e for e in ordered if e.status == EntryStatus.WAITING]

    ranked = [PositionedEntry.from_entry(e, 0, estimate_eta(0, average_service_minutes)) for e in serving]
    for position, entry in enumerate(waiting, start=1):
        ranked.append(
            PositionedEntry.from_entry(
                entry,
                position,
                estimate_eta(position, average_service_minutes),
            )
        )
    return ranked, len(waiting)
