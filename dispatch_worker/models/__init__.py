"""Worker models."""

from .enums import WorkerState
from .schemas import WorkerMetrics

__all__ = ["WorkerState", "WorkerMetrics"]
