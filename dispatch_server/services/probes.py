"""Dependency probes used by the readiness check.

A probe proves one backing dependency is reachable with the smallest
side-effecting operation available: open a connection, issue a no-op, close
it. The whole attempt runs under a single deadline, and any resource opened
along the way is released on every exit path.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp
import asyncpg
import redis.asyncio as aioredis
import structlog

from dispatch_core.timeout import with_timeout
from ..core.exceptions import ProbeFailure


logger = structlog.get_logger(__name__)

DEFAULT_PROBE_TIMEOUT_MS = 2000
OK = "ok"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe run."""
    name: str
    status: str
    elapsed_ms: float

    @property
    def ok(self) -> bool:
        return self.status == OK


def describe_error(error: BaseException) -> str:
    """Human readable failure text for a probe status."""
    message = str(error)
    return message if message else type(error).__name__


class DependencyProbe(ABC):
    """Base class for all dependency probes."""

    def __init__(self, name: str, timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS):
        if timeout_ms <= 0:
            raise ValueError("Probe timeout must be positive")
        self.name = name
        self.timeout_ms = timeout_ms

    @abstractmethod
    async def open(self) -> Any:
        """Acquire the resource used to reach the dependency."""
        pass

    @abstractmethod
    async def ping(self, resource: Any) -> None:
        """Issue a no-op against the dependency. Raise on failure."""
        pass

    @abstractmethod
    async def close(self, resource: Any) -> None:
        """Release the resource gracefully."""
        pass

    async def discard(self, resource: Any) -> None:
        """Release the resource after a failure (override for a forced close)."""
        await self.close(resource)

    async def run(self) -> ProbeResult:
        """Run the probe. Never raises; failures become the status text."""
        started = time.monotonic()
        try:
            await with_timeout(self._attempt(), self.timeout_ms, self.name)
            status = OK
        except Exception as e:
            status = describe_error(e)
            logger.warning("probe_failed", dependency=self.name, error=status)

        elapsed_ms = round((time.monotonic() - started) * 1000, 1)
        return ProbeResult(name=self.name, status=status, elapsed_ms=elapsed_ms)

    async def _attempt(self):
        resource = await self.open()
        try:
            await self.ping(resource)
            await self.close(resource)
        except BaseException:
            await self._discard_quietly(resource)
            raise

    async def _discard_quietly(self, resource: Any):
        try:
            await self.discard(resource)
        except Exception as e:
            # Never mask the probe failure
            logger.debug("probe_cleanup_failed", dependency=self.name, error=describe_error(e))


class PostgresProbe(DependencyProbe):
    """Connect, ``SELECT 1`` and disconnect."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
        name: str = "postgres",
        timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS,
    ):
        super().__init__(name, timeout_ms)
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database

    async def open(self) -> asyncpg.Connection:
        return await asyncpg.connect(
            host=self.host,
            port=self.port,
            user=self.user,
            password=self.password,
            database=self.database,
            timeout=self.timeout_ms / 1000,
        )

    async def ping(self, resource: asyncpg.Connection) -> None:
        await resource.execute("SELECT 1")

    async def close(self, resource: asyncpg.Connection) -> None:
        await resource.close()

    async def discard(self, resource: asyncpg.Connection) -> None:
        resource.terminate()


class RedisProbe(DependencyProbe):
    """``PING`` over a dedicated, short-lived client."""

    def __init__(self, host: str, port: int, name: str = "redis", timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS):
        super().__init__(name, timeout_ms)
        self.host = host
        self.port = port

    async def open(self) -> aioredis.Redis:
        return aioredis.Redis(
            host=self.host,
            port=self.port,
            socket_connect_timeout=self.timeout_ms / 1000,
            socket_timeout=self.timeout_ms / 1000,
        )

    async def ping(self, resource: aioredis.Redis) -> None:
        if not await resource.ping():
            raise ProbeFailure(self.name, f"{self.name} did not acknowledge PING")

    async def close(self, resource: aioredis.Redis) -> None:
        await resource.aclose()


class HttpProbe(DependencyProbe):
    """``GET`` a health URL and expect a 2xx answer."""

    def __init__(self, url: str, name: str, timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS):
        super().__init__(name, timeout_ms)
        self.url = url

    async def open(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_ms / 1000))

    async def ping(self, resource: aiohttp.ClientSession) -> None:
        async with resource.get(self.url) as response:
            if response.status >= 300:
                raise ProbeFailure(self.name, f"{self.name} returned HTTP {response.status}")

    async def close(self, resource: aiohttp.ClientSession) -> None:
        await resource.close()


def build_default_probes(settings, timeout_ms: Optional[int] = None) -> list:
    """Probes for the primary store, the broker and, if configured, storage."""
    timeout = timeout_ms or settings.ready_probe_timeout_ms
    probes = [
        PostgresProbe(
            host=settings.postgres_host,
            port=settings.postgres_port,
            user=settings.postgres_user,
            password=settings.postgres_password,
            database=settings.postgres_db,
            timeout_ms=timeout,
        ),
        RedisProbe(host=settings.redis_host, port=settings.redis_port, timeout_ms=timeout),
    ]
    if settings.storage_health_url:
        probes.append(HttpProbe(settings.storage_health_url, name="storage", timeout_ms=timeout))
    return probes
