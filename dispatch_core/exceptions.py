"""Broker exceptions shared by the server and the worker."""

from typing import Optional


class BrokerError(Exception):
    """Base exception for broker errors."""
    pass


class BrokerUnavailable(BrokerError):
    """The broker could not be reached, or rejected the operation."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation


class LeaseLost(BrokerError):
    """The worker no longer holds the lease on a job."""

    def __init__(self, queue_name: str, job_id: str):
        super().__init__(f"Lease lost for job {job_id} on queue {queue_name}")
        self.queue_name = queue_name
        self.job_id = job_id


class PayloadNotSerializable(BrokerError):
    """Job payload cannot be encoded as JSON."""
    pass
