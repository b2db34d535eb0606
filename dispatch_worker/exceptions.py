"""Worker exceptions."""

from typing import Optional


class WorkerError(Exception):
    """Base exception for worker errors."""
    pass


class HandlerFailure(WorkerError):
    """A job handler raised while executing a job."""

    def __init__(self, job_id: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.job_id = job_id
        self.cause = cause


class UnknownQueueHandler(WorkerError):
    """No handler is registered for the requested queue."""

    def __init__(self, queue_name: str, available: Optional[list] = None):
        message = f"No handler registered for queue '{queue_name}'"
        if available is not None:
            message += f". Available: {available}"
        super().__init__(message)
        self.queue_name = queue_name
