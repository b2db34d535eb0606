"""Job producer: hands work to the broker over per-call connections."""

from typing import Any, Callable, Dict, Iterable, Optional

import structlog

from dispatch_core.broker import RedisBroker, encode_payload
from ..core.exceptions import NotFoundError, ValidationError


logger = structlog.get_logger(__name__)

# Async context manager factory yielding a connected broker
BrokerFactory = Callable[[], Any]


class JobProducer:
    """Enqueues jobs and reads their status.

    A broker connection is opened for every call and released when the call
    finishes, whether it succeeded or not. No connection outlives a request.
    """

    def __init__(
        self,
        broker_factory: BrokerFactory,
        known_queues: Optional[Iterable[str]] = None,
        max_attempts: int = 1,
    ):
        self.broker_factory = broker_factory
        self.known_queues = set(known_queues) if known_queues else None
        self.max_attempts = max_attempts

    @classmethod
    def from_settings(cls, settings) -> "JobProducer":
        def broker_factory():
            return RedisBroker.connect(
                settings.redis_host,
                settings.redis_port,
                prefix=settings.queue_prefix,
            )

        return cls(broker_factory, known_queues=settings.known_queues, max_attempts=settings.job_max_attempts)

    def _check_queue(self, queue_name: str):
        if self.known_queues is not None and queue_name not in self.known_queues:
            raise ValidationError(f"Unknown queue: {queue_name}", field="queue_name")

    async def enqueue(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        job_name: Optional[str] = None,
    ) -> str:
        """Durably enqueue one job and return the broker-assigned id.

        Raises ``BrokerUnavailable`` when the broker cannot be reached or
        rejects the job; in that case the job was not queued.
        """
        self._check_queue(queue_name)
        encode_payload(payload)

        async with self.broker_factory() as broker:
            job_id = await broker.enqueue(
                queue_name,
                job_name or queue_name,
                payload,
                max_attempts=self.max_attempts,
            )

        logger.info("job_enqueued", queue=queue_name, job_id=job_id, name=job_name or queue_name)
        return job_id

    async def get_job(self, queue_name: str, job_id: str) -> Dict[str, Any]:
        """Current status of a job."""
        self._check_queue(queue_name)
        async with self.broker_factory() as broker:
            job = await broker.get_job(queue_name, job_id)

        if job is None:
            raise NotFoundError("Job", job_id)
        return job.to_dict()

    async def get_counts(self, queue_name: str) -> Dict[str, int]:
        self._check_queue(queue_name)
        async with self.broker_factory() as broker:
            return await broker.get_counts(queue_name)
