"""Enumerations for worker states."""

from enum import Enum


class WorkerState(Enum):
    """Worker pool lifecycle states."""
    INITIALIZING = "initializing"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"
