"""Pydantic schemas for request/response validation."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# Request schemas
class EnqueueRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict, description="Opaque job payload")
    name: Optional[str] = Field(default=None, min_length=1, description="Job name, defaults to the queue name")


# Response schemas
class EnqueueResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(..., alias="jobId")


class PingEnqueueResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    queued: bool = True
    job_id: str = Field(..., alias="jobId")


class HealthResponse(BaseModel):
    status: str
    version: str


class ReadyResponse(BaseModel):
    status: str
    details: Dict[str, str]


class JobStatusResponse(BaseModel):
    id: str
    queue: str
    name: str
    payload: Dict[str, Any]
    timestamp: int
    state: str
    attempts_made: int
    max_attempts: int
    error: Optional[str] = None
    finished_at: Optional[int] = None


class CountsResponse(BaseModel):
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
