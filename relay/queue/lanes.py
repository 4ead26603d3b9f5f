"""
Lane configuration for the job queue.
"""

from __future__ import annotations

from dataclasses import dataclass

from django.conf import settings

TRANSFER_LANE = "transfer"
SYNC_LANE = "sync"
CLEANUP_LANE = "cleanup"
NOTIFICATION_LANE = "notification"

# Units of work
TRANSFER_RUN = "transfer.run"
SYNC_RUN = "sync.run"
CLEANUP = "cleanup"
NOTIFY = "notify"

DEFAULT_LANES = {
    TRANSFER_LANE: {"concurrency": 3, "max_attempts": 3, "backoff_seconds": 5, "stall_timeout_seconds": 600},
    SYNC_LANE: {"concurrency": 2, "max_attempts": 3, "backoff_seconds": 10, "stall_timeout_seconds": 900},
    CLEANUP_LANE: {"concurrency": 1, "max_attempts": 2, "backoff_seconds": 60, "stall_timeout_seconds": 300},
    NOTIFICATION_LANE: {"concurrency": 5, "max_attempts": 5, "backoff_seconds": 2, "stall_timeout_seconds": 60},
}


@dataclass(frozen=True)
class LaneConfig:
    name: str
    concurrency: int = 1
    max_attempts: int = 3
    backoff_seconds: float = 5.0
    stall_timeout_seconds: float = 300.0

    def backoff_for(self, attempts_made: int) -> float:
        """Exponential backoff after the ``attempts_made``-th failure."""
        return self.backoff_seconds * (2 ** max(attempts_made - 1, 0))


def load_lanes(overrides: dict | None = None) -> dict[str, LaneConfig]:
    """Build lane configs from the defaults merged with ``settings.RELAY_QUEUE_LANES``."""
    if overrides is None:
        overrides = getattr(settings, "RELAY_QUEUE_LANES", {})

    lanes = {}
    for name in {**DEFAULT_LANES, **overrides}:
        values = {**DEFAULT_LANES.get(name, {}), **overrides.get(name, {})}
        lanes[name] = LaneConfig(name=name, **values)
    return lanes
