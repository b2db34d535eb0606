"""Retry and dead-letter policy with exponential backoff."""

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Decides whether a failed attempt is retried and after how long.

    Attempts are 1-based. Once ``max_attempts`` have been made the job is
    dead-lettered.
    """
    max_attempts: int = 3
    base_delay_ms: int = 1000
    exponential_base: float = 2.0
    max_delay_ms: int = 60000

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must not be negative")

    def calculate_delay(self, attempt: int) -> int:
        """Delay in milliseconds before retrying after ``attempt``."""
        delay = self.base_delay_ms * (self.exponential_base ** (attempt - 1))
        return int(min(delay, self.max_delay_ms))

    def next_delay(self, attempts_made: int, max_attempts: Optional[int] = None) -> Optional[int]:
        """Delay before the next attempt, or ``None`` to dead-letter the job.

        ``max_attempts`` overrides the policy's limit, so a job keeps the
        limit it was enqueued with.
        """
        limit = max_attempts if max_attempts is not None else self.max_attempts
        if attempts_made >= limit:
            return None
        return self.calculate_delay(attempts_made)

    async def execute_with_retry(
        self,
        operation: Callable,
        operation_name: str = "operation",
        *args,
        **kwargs
    ) -> Any:
        """Execute operation, retrying with backoff until attempts run out."""
        last_exception = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                if asyncio.iscoroutinefunction(operation):
                    result = await operation(*args, **kwargs)
                else:
                    result = operation(*args, **kwargs)

                if attempt > 1:
                    logger.info("retry_succeeded", operation=operation_name, attempt=attempt)

                return result

            except Exception as e:
                last_exception = e
                logger.warning("retry_attempt_failed", operation=operation_name, attempt=attempt, error=str(e))

                if attempt < self.max_attempts:
                    delay = self.calculate_delay(attempt)
                    logger.info("retry_scheduled", operation=operation_name, delay_ms=delay)
                    await asyncio.sleep(delay / 1000)
                else:
                    logger.error("retry_exhausted", operation=operation_name, attempts=self.max_attempts)

        raise last_exception
