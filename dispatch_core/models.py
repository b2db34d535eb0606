"""Domain objects for queued jobs and their execution outcomes."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class JobState(str, Enum):
    """Job lifecycle state as stored by the broker."""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeState(str, Enum):
    """Terminal state of a single execution attempt."""
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """A unit of work owned by the broker.

    The payload is opaque to the broker and to the producer; only handlers
    interpret it.
    """
    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any]
    timestamp: int
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    max_attempts: int = 1
    error: Optional[str] = None
    finished_at: Optional[int] = None
    lease_token: Optional[str] = None

    @classmethod
    def from_redis(cls, queue_name: str, job_id: str, raw: Dict[str, str]) -> "Job":
        """Build a job from the broker's hash representation."""
        finished_at = raw.get("finished_at")
        return cls(
            id=job_id,
            queue_name=queue_name,
            name=raw.get("name", ""),
            payload=json.loads(raw.get("data") or "{}"),
            timestamp=int(raw.get("timestamp") or 0),
            state=JobState(raw.get("state") or JobState.WAITING.value),
            attempts_made=int(raw.get("attempts_made") or 0),
            max_attempts=int(raw.get("max_attempts") or 1),
            error=raw.get("error") or None,
            finished_at=int(finished_at) if finished_at else None,
        )

    @property
    def enqueued_at(self) -> datetime:
        """Enqueue time as an aware UTC datetime."""
        return datetime.fromtimestamp(self.timestamp / 1000, tz=timezone.utc)

    @property
    def attempts_left(self) -> int:
        return max(self.max_attempts - self.attempts_made, 0)

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the job, without the lease token."""
        return {
            "id": self.id,
            "queue": self.queue_name,
            "name": self.name,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "state": self.state.value,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "error": self.error,
            "finished_at": self.finished_at,
        }


@dataclass(frozen=True)
class JobOutcome:
    """Result of one execution attempt, reported exactly once per claim."""
    job_id: str
    queue_name: str
    state: OutcomeState
    duration_ms: int
    error: Optional[str] = None
    will_retry: bool = False
    attempts_made: int = 0
    finished_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def succeeded(self) -> bool:
        return self.state == OutcomeState.COMPLETED
