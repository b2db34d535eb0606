"""Worker services."""

from .handler_service import HandlerRegistry
from .worker_pool import WorkerPool

__all__ = ["HandlerRegistry", "WorkerPool"]
