"""Ping handler: proves the queue round trip works."""

from datetime import datetime, timezone

import structlog

from dispatch_core.models import Job
from .base import JobHandler

logger = structlog.get_logger(__name__)


class PingHandler(JobHandler):
    """Log the job and succeed."""

    @property
    def queue_name(self) -> str:
        return "system.ping"

    async def handle(self, job: Job) -> None:
        logger.info(
            "ping_handled",
            job_id=job.id,
            handled_at=datetime.now(timezone.utc).isoformat(),
            enqueued_at=job.enqueued_at.isoformat(),
            data=job.payload,
        )
