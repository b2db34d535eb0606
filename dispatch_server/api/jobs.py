"""Job management API endpoints."""

from fastapi import APIRouter, Depends, status

from ..models.schemas import CountsResponse, EnqueueRequest, EnqueueResponse, JobStatusResponse
from ..services import JobProducer
from .dependencies import get_producer


router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/{queue_name}", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(
    queue_name: str,
    request: EnqueueRequest,
    producer: JobProducer = Depends(get_producer)
):
    """Enqueue a job on a named queue."""
    job_id = await producer.enqueue(queue_name, request.payload, job_name=request.name)
    return {"jobId": job_id}


@router.get("/{queue_name}/counts", response_model=CountsResponse)
async def get_counts(
    queue_name: str,
    producer: JobProducer = Depends(get_producer)
):
    """Number of jobs per state on a queue."""
    return await producer.get_counts(queue_name)


@router.get("/{queue_name}/{job_id}", response_model=JobStatusResponse)
async def get_job(
    queue_name: str,
    job_id: str,
    producer: JobProducer = Depends(get_producer)
):
    """Get a specific job by id."""
    return await producer.get_job(queue_name, job_id)
