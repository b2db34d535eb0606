"""FastAPI dependency injection helpers."""

from ..core.dependencies import get_dependencies
from ..services import JobProducer, ReadinessAggregator


async def get_producer() -> JobProducer:
    """Get job producer instance."""
    return get_dependencies().producer


async def get_readiness() -> ReadinessAggregator:
    """Get readiness aggregator instance."""
    return get_dependencies().readiness
