"""Debug endpoints for smoke-testing the queue end to end."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends

from ..models.schemas import PingEnqueueResponse
from ..services import JobProducer
from .dependencies import get_producer

PING_QUEUE = "system.ping"

router = APIRouter(prefix="/debug", tags=["debug"])


@router.post("/enqueue-ping", response_model=PingEnqueueResponse)
async def enqueue_ping(
    body: Optional[Dict[str, Any]] = Body(default=None),
    producer: JobProducer = Depends(get_producer)
):
    """Enqueue a ping job carrying the request body."""
    payload = {"at": datetime.now(timezone.utc).isoformat(), **(body or {})}
    job_id = await producer.enqueue(PING_QUEUE, payload, job_name="ping")
    return {"queued": True, "jobId": job_id}
