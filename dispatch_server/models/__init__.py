"""Request and response schemas."""

from .schemas import (
    CountsResponse,
    EnqueueRequest,
    EnqueueResponse,
    HealthResponse,
    JobStatusResponse,
    PingEnqueueResponse,
    ReadyResponse,
)

__all__ = [
    "CountsResponse",
    "EnqueueRequest",
    "EnqueueResponse",
    "HealthResponse",
    "JobStatusResponse",
    "PingEnqueueResponse",
    "ReadyResponse",
]
