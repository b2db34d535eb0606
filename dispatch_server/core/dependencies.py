"""Dependency injection container."""

from typing import Optional

import structlog

from .config import Settings
from ..services.producer import JobProducer
from ..services.probes import build_default_probes
from ..services.readiness import ReadinessAggregator


class Dependencies:
    """Dependency injection container for application services."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.logger = structlog.get_logger(__name__)

        self.producer = JobProducer.from_settings(settings)
        self.readiness = ReadinessAggregator(build_default_probes(settings))

    async def initialize(self):
        """Log the wiring; connections are opened per request."""
        self.logger.info(
            "dependencies_initialized",
            broker=f"{self.settings.redis_host}:{self.settings.redis_port}",
            queues=self.settings.known_queues,
            probes=[probe.name for probe in self.readiness.probes],
        )

    async def cleanup(self):
        """Nothing is held between requests, so there is nothing to close."""
        self.logger.info("dependencies_cleaned_up")


# Global dependencies instance
_dependencies: Optional[Dependencies] = None


def get_dependencies() -> Dependencies:
    """Get the global dependencies instance."""
    global _dependencies
    if _dependencies is None:
        from .config import get_settings
        _dependencies = Dependencies(get_settings())
    return _dependencies
