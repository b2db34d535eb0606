"""
Base interface for job handler plugins.
"""

from abc import ABC, abstractmethod

from dispatch_core.models import Job


class JobHandler(ABC):
    """Base class for all job handlers."""

    @property
    @abstractmethod
    def queue_name(self) -> str:
        """Return the queue this handler consumes."""
        pass

    @abstractmethod
    async def handle(self, job: Job) -> None:
        """
        Execute one job.

        Args:
            job: The claimed job, with its payload and enqueue timestamp

        Raises:
            Exception: Any error marks this attempt as failed
        """
        pass

    def validate_payload(self, job: Job) -> None:
        """
        Validate the payload before execution (override if needed).

        Raises:
            ValueError: If the payload is unusable for this handler
        """
        pass
