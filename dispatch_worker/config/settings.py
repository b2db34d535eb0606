"""Worker configuration management."""

import os
from dataclasses import dataclass, field
from typing import List, Optional

from dispatch_core.retry import RetryPolicy


def _positive_int(raw: Optional[str], default: int) -> int:
    """Parse a positive integer, falling back to ``default`` on bad input."""
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(float(raw))
    except ValueError:
        return default
    return value if value > 0 else default


def _optional_positive_int(raw: Optional[str]) -> Optional[int]:
    value = _positive_int(raw, 0)
    return value or None


def _positive_float(raw: Optional[str], default: float) -> float:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass
class WorkerConfig:
    """Worker configuration with environment variable support."""

    # Broker connection
    redis_host: str = "redis"
    redis_port: int = 6379
    queue_prefix: str = "continuum"

    # Consumption
    queues: List[str] = field(default_factory=lambda: ["system.ping"])
    concurrency: int = 1
    poll_interval_ms: int = 1000
    job_timeout_ms: Optional[int] = None

    # Leases (in milliseconds)
    lease_ms: int = 30000
    maintenance_interval_ms: int = 15000
    drain_timeout_ms: int = 30000

    # Retry configuration
    max_attempts: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 60000
    retry_exponential_base: float = 2.0

    log_level: str = "INFO"

    @classmethod
    def from_environment(cls) -> "WorkerConfig":
        """Create configuration from environment variables."""
        queues = [name.strip() for name in os.environ.get("WORKER_QUEUES", "system.ping").split(",") if name.strip()]
        return cls(
            redis_host=os.environ.get("REDIS_HOST", "redis"),
            redis_port=_positive_int(os.environ.get("REDIS_PORT"), 6379),
            queue_prefix=os.environ.get("QUEUE_PREFIX", "continuum"),

            queues=queues,
            concurrency=_positive_int(os.environ.get("WORKER_CONCURRENCY"), 1),
            poll_interval_ms=_positive_int(os.environ.get("POLL_INTERVAL_MS"), 1000),
            job_timeout_ms=_optional_positive_int(os.environ.get("JOB_TIMEOUT_MS")),

            lease_ms=_positive_int(os.environ.get("LEASE_MS"), 30000),
            maintenance_interval_ms=_positive_int(os.environ.get("MAINTENANCE_INTERVAL_MS"), 15000),
            drain_timeout_ms=_positive_int(os.environ.get("DRAIN_TIMEOUT_MS"), 30000),

            # Retry settings
            max_attempts=_positive_int(os.environ.get("JOB_MAX_ATTEMPTS"), 3),
            retry_base_delay_ms=_positive_int(os.environ.get("RETRY_BASE_DELAY_MS"), 1000),
            retry_max_delay_ms=_positive_int(os.environ.get("RETRY_MAX_DELAY_MS"), 60000),
            retry_exponential_base=_positive_float(os.environ.get("RETRY_EXPONENTIAL_BASE"), 2.0),

            log_level=os.environ.get("LOG_LEVEL", "INFO"),
        )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_ms=self.retry_base_delay_ms,
            exponential_base=self.retry_exponential_base,
            max_delay_ms=self.retry_max_delay_ms,
        )


# Global config instance
_config: Optional[WorkerConfig] = None


def get_config() -> WorkerConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = WorkerConfig.from_environment()
    return _config
