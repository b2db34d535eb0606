"""Data classes for worker observability."""

from dataclasses import dataclass
from typing import Optional


@dataclass
class WorkerMetrics:
    """Worker pool metrics data structure."""
    queue_name: str
    state: str
    concurrency: int
    in_flight: int
    jobs_completed: int
    jobs_failed: int
    leases_lost: int
    uptime_seconds: float
    last_error: Optional[str] = None
