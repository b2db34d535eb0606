"""Readiness aggregation over dependency probes."""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

import structlog

from .probes import OK, DependencyProbe, ProbeResult, describe_error


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReadinessReport:
    """Per-dependency status; ``ok`` is derived from ``details`` only."""
    details: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(status == OK for status in self.details.values())

    @property
    def failing(self) -> List[str]:
        return sorted(name for name, status in self.details.items() if status != OK)

    def to_dict(self) -> Dict[str, object]:
        return {"ok": self.ok, "details": dict(self.details)}


class ReadinessAggregator:
    """Runs every probe concurrently and reduces the results to one report.

    Nothing is cached: each ``check()`` reflects the dependencies as they are
    right now.
    """

    def __init__(self, probes: Iterable[DependencyProbe]):
        self.probes: List[DependencyProbe] = []
        for probe in probes:
            self.register(probe)

    def register(self, probe: DependencyProbe):
        """Add a probe; dependency names must be unique."""
        if any(existing.name == probe.name for existing in self.probes):
            raise ValueError(f"Probe '{probe.name}' is already registered")
        self.probes.append(probe)

    async def check(self) -> ReadinessReport:
        """Probe all dependencies in parallel. Never raises."""
        results = await asyncio.gather(
            *(probe.run() for probe in self.probes),
            return_exceptions=True
        )

        details: Dict[str, str] = {}
        for probe, result in zip(self.probes, results):
            if isinstance(result, ProbeResult):
                details[probe.name] = result.status
            elif isinstance(result, BaseException):
                details[probe.name] = describe_error(result)
            else:
                details[probe.name] = "invalid probe result"

        report = ReadinessReport(details=details)
        if report.ok:
            logger.debug("readiness_checked", ok=True, dependencies=len(details))
        else:
            logger.warning("readiness_checked", ok=False, failing=report.failing, details=details)
        return report
