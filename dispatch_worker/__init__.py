"""Worker process for the dispatch job queues."""

from .config.settings import WorkerConfig, get_config
from .services.worker_pool import WorkerPool

__version__ = "1.0.0"

__all__ = ["WorkerPool", "WorkerConfig", "get_config"]
