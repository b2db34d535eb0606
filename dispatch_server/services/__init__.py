"""Service layer for job production and readiness."""

from .producer import JobProducer
from .probes import DependencyProbe, HttpProbe, PostgresProbe, ProbeResult, RedisProbe, build_default_probes
from .readiness import ReadinessAggregator, ReadinessReport

__all__ = [
    "JobProducer",
    "DependencyProbe",
    "HttpProbe",
    "PostgresProbe",
    "RedisProbe",
    "ProbeResult",
    "build_default_probes",
    "ReadinessAggregator",
    "ReadinessReport",
]
