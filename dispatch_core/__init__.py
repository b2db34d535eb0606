"""Shared broker, job model and timeout primitives for the dispatch services."""

from .broker import RedisBroker
from .exceptions import BrokerError, BrokerUnavailable, LeaseLost, PayloadNotSerializable
from .models import Job, JobOutcome, JobState, OutcomeState
from .retry import RetryPolicy
from .timeout import OperationTimeout, with_timeout

__version__ = "1.0.0"

__all__ = [
    "RedisBroker",
    "BrokerError",
    "BrokerUnavailable",
    "LeaseLost",
    "PayloadNotSerializable",
    "Job",
    "JobOutcome",
    "JobState",
    "OutcomeState",
    "RetryPolicy",
    "OperationTimeout",
    "with_timeout",
]
