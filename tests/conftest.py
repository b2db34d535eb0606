import asyncio
import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import httpx
import pytest
from testcontainers.redis import RedisContainer

from dispatch_core.broker import RedisBroker
from dispatch_core.exceptions import BrokerUnavailable, LeaseLost, PayloadNotSerializable
from dispatch_core.models import Job, JobState
from dispatch_server.api.dependencies import get_producer, get_readiness
from dispatch_server.main import app
from dispatch_server.services import JobProducer, ReadinessAggregator
from dispatch_server.services.probes import DependencyProbe


class FakeBroker:
    """In-memory broker with the same contract as RedisBroker."""

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Job]] = {}
        self.waiting: Dict[str, List[str]] = {}
        self.leases: Dict[str, Dict[str, float]] = {}
        self.delayed: Dict[str, Dict[str, float]] = {}
        self.counter = 0
        self.closed = False

        # Failure injection
        self.unavailable = False
        self.claim_failures = 0
        self.lose_lease_on_complete = False
        self.claim_error: Optional[Exception] = None
        self.maintenance_error: Optional[Exception] = None

        # Call recording
        self.extensions: List[str] = []
        self.completed: List[str] = []
        self.failed: List[Dict[str, Any]] = []
        self.enqueued: List[Dict[str, Any]] = []

    def _check(self, operation: str):
        if self.unavailable:
            raise BrokerUnavailable(f"Broker {operation} failed: Connection refused", operation=operation)

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def close(self):
        self.closed = True

    async def enqueue(self, queue_name: str, name: str, payload: Dict[str, Any], max_attempts: int = 1) -> str:
        self._check("enqueue")
        try:
            json.dumps(payload)
        except TypeError as e:
            raise PayloadNotSerializable(str(e)) from e

        self.counter += 1
        job_id = str(self.counter)
        self.jobs.setdefault(queue_name, {})[job_id] = Job(
            id=job_id,
            queue_name=queue_name,
            name=name,
            payload=payload,
            timestamp=int(time.time() * 1000),
            max_attempts=max_attempts,
        )
        self.waiting.setdefault(queue_name, []).append(job_id)
        self.enqueued.append({"queue": queue_name, "name": name, "payload": payload, "job_id": job_id})
        return job_id

    async def claim(self, queue_name: str, lease_ms: int) -> Optional[Job]:
        if self.claim_failures > 0:
            self.claim_failures -= 1
            raise BrokerUnavailable("Broker claim failed: Connection reset", operation="claim")
        if self.claim_error is not None:
            error, self.claim_error = self.claim_error, None
            raise error
        self._check("claim")

        queue = self.waiting.get(queue_name, [])
        if not queue:
            return None

        job_id = queue.pop(0)
        job = self.jobs[queue_name][job_id]
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.lease_token = uuid.uuid4().hex
        self.leases.setdefault(queue_name, {})[job_id] = time.time() + lease_ms / 1000

        claimed = Job(**{**job.__dict__})
        return claimed

    def _owns(self, queue_name: str, job_id: str, token: str) -> bool:
        job = self.jobs.get(queue_name, {}).get(job_id)
        return job is not None and job.lease_token == token and job_id in self.leases.get(queue_name, {})

    async def extend_lease(self, queue_name: str, job_id: str, token: str, lease_ms: int):
        self._check("extend_lease")
        if not self._owns(queue_name, job_id, token):
            raise LeaseLost(queue_name, job_id)
        self.leases[queue_name][job_id] = time.time() + lease_ms / 1000
        self.extensions.append(job_id)

    async def complete(self, queue_name: str, job_id: str, token: str):
        self._check("complete")
        if self.lose_lease_on_complete or not self._owns(queue_name, job_id, token):
            raise LeaseLost(queue_name, job_id)
        job = self.jobs[queue_name][job_id]
        del self.leases[queue_name][job_id]
        job.state = JobState.COMPLETED
        job.lease_token = None
        self.completed.append(job_id)

    async def fail(self, queue_name: str, job_id: str, token: str, error: str, retry_delay_ms: Optional[int] = None):
        self._check("fail")
        if not self._owns(queue_name, job_id, token):
            raise LeaseLost(queue_name, job_id)
        job = self.jobs[queue_name][job_id]
        del self.leases[queue_name][job_id]
        job.error = error
        job.lease_token = None
        self.failed.append({"job_id": job_id, "error": error, "retry_delay_ms": retry_delay_ms})
        if retry_delay_ms is None:
            job.state = JobState.FAILED
        else:
            job.state = JobState.DELAYED
            self.delayed.setdefault(queue_name, {})[job_id] = time.time() + retry_delay_ms / 1000
        return job.state

    async def requeue_expired(self, queue_name: str):
        self._check("requeue_expired")
        if self.maintenance_error is not None:
            error, self.maintenance_error = self.maintenance_error, None
            raise error
        now = time.time()
        requeued, dead = [], []
        for job_id, deadline in list(self.leases.get(queue_name, {}).items()):
            if deadline > now:
                continue
            del self.leases[queue_name][job_id]
            job = self.jobs[queue_name][job_id]
            job.lease_token = None
            if job.attempts_made >= job.max_attempts:
                job.state = JobState.FAILED
                job.error = "lease expired"
                dead.append(job_id)
            else:
                job.state = JobState.WAITING
                self.waiting.setdefault(queue_name, []).insert(0, job_id)
                requeued.append(job_id)
        return requeued, dead

    async def promote_delayed(self, queue_name: str) -> int:
        self._check("promote_delayed")
        now = time.time()
        due = [job_id for job_id, at in self.delayed.get(queue_name, {}).items() if at <= now]
        for job_id in due:
            del self.delayed[queue_name][job_id]
            self.jobs[queue_name][job_id].state = JobState.WAITING
            self.waiting.setdefault(queue_name, []).append(job_id)
        return len(due)

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        self._check("get_job")
        return self.jobs.get(queue_name, {}).get(job_id)

    async def get_counts(self, queue_name: str) -> Dict[str, int]:
        self._check("get_counts")
        counts = {state.value: 0 for state in JobState}
        for job in self.jobs.get(queue_name, {}).values():
            counts[job.state.value] += 1
        return counts


class FakeBrokerFactory:
    """Per-call connection factory that records how many connections were opened and closed."""

    def __init__(self, broker: FakeBroker):
        self.broker = broker
        self.opened = 0
        self.closed = 0

    @asynccontextmanager
    async def _connection(self):
        self.opened += 1
        try:
            yield self.broker
        finally:
            self.closed += 1

    def __call__(self):
        return self._connection()


class StaticProbe(DependencyProbe):
    """Probe whose behaviour is scripted by the test."""

    def __init__(self, name: str, delay: float = 0.0, error: Optional[BaseException] = None,
                 hang: bool = False, timeout_ms: int = 2000):
        super().__init__(name, timeout_ms)
        self.delay = delay
        self.error = error
        self.hang = hang
        self.opened = 0
        self.closed = 0
        self.discarded = 0

    async def open(self):
        self.opened += 1
        if self.hang:
            await asyncio.Event().wait()
        await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return object()

    async def ping(self, resource):
        return None

    async def close(self, resource):
        self.closed += 1

    async def discard(self, resource):
        self.discarded += 1


@pytest.fixture
def fake_broker():
    """In-memory broker"""
    return FakeBroker()


@pytest.fixture
def broker_factory(fake_broker):
    """Per-call connection factory over the fake broker"""
    return FakeBrokerFactory(fake_broker)


@pytest.fixture
def static_probe():
    """Factory for scripted probes"""
    return StaticProbe


@pytest.fixture
def producer(broker_factory):
    """Job producer wired to the fake broker"""
    return JobProducer(broker_factory, known_queues=["system.ping", "latex.compile"], max_attempts=3)


@pytest.fixture
def readiness():
    """Readiness aggregator with two healthy probes"""
    return ReadinessAggregator([StaticProbe("postgres", delay=0.005), StaticProbe("redis", delay=0.005)])


@pytest.fixture
async def async_client(producer, readiness):
    """Async HTTP test client with service dependencies overridden"""
    app.dependency_overrides[get_producer] = lambda: producer
    app.dependency_overrides[get_readiness] = lambda: readiness
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(scope="session")
def redis_container():
    """Start a Redis container for broker tests"""
    container = RedisContainer("redis:7-alpine")
    try:
        container.start()
    except Exception as e:
        pytest.skip(f"Redis container unavailable: {e}")

    try:
        yield container
    finally:
        container.stop()


@pytest.fixture
async def redis_broker(redis_container):
    """Broker on the Redis container, isolated under a fresh key prefix"""
    client = RedisBroker.create_client(
        redis_container.get_container_host_ip(),
        int(redis_container.get_exposed_port(6379)),
    )
    broker = RedisBroker(client, prefix=f"test-{uuid.uuid4().hex}")
    yield broker
    await broker.close()
