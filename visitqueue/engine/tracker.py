"""
Per-server moving average of observed service durations.
"""

from dataclasses import dataclass
from datetime import datetime

from visitqueue.constants import (
    DEFAULT_SERVICE_MINUTES,
    DEFAULT_SERVICE_WINDOW_SIZE,
    MAX_TRACKED_SERVICE_MINUTES,
)
from visitqueue.engine.eta import round_half_up


@dataclass(frozen=True)
class TrackerUpdate:
    """Result of offering one observation to the tracker."""

    recent_service_minutes: list[int]
    average_service_minutes: int
    tracked: bool


class MovingAverageTracker:
    """
    Windowed average over the last N accepted service durations.

    Observations outside (0, max_minutes) are discarded as outliers.
    The tracker is stateless; the window lives on the server record.
    """

    def __init__(
        self,
        window_size: int = DEFAULT_SERVICE_WINDOW_SIZE,
        default_minutes: int = DEFAULT_SERVICE_MINUTES,
        max_minutes: int = MAX_TRACKED_SERVICE_MINUTES,
    ):
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        self.window_size = window_size
        self.default_minutes = default_minutes
        self.max_minutes = max_minutes

    def accepts(self, minutes: int) -> bool:
        """Check if an observation is inside the tracked range."""
        return 0 < minutes < self.max_minutes

    def average(self, recent: list[int]) -> int:
        """Rounded mean of the window, or the default when empty."""
        if not recent:
            return self.default_minutes
        return round_half_up(sum(recent) / len(recent))

    def record(self, recent: list[int], minutes: int) -> TrackerUpdate:
        """
        Offer one observation.

        Args:
            recent: The current window, oldest first.
            minutes: Observed service duration in whole minutes.

        Returns:
            TrackerUpdate: The new window and average. When the observation
            is rejected the window is returned unchanged.
        """
        if not self.accepts(minutes):
            return TrackerUpdate(list(recent), self.average(recent), tracked=False)

        window = [*recent, minutes][-self.window_size:]
        return TrackerUpdate(window, self.average(window), tracked=True)


def elapsed_minutes(started_at: datetime, finished_at: datetime) -> int:
    """Whole minutes between two instants, rounded half up."""
    return round_half_up((finished_at - started_at).total_seconds() / 60)
