import asyncio

import pytest

from dispatch_core.broker import RedisBroker
from dispatch_core.exceptions import LeaseLost
from dispatch_core.models import JobState

QUEUE = "system.ping"


@pytest.mark.asyncio
class TestRedisBrokerQueue:
    """Test queue order and leases against a real Redis"""

    async def test_claims_in_enqueue_order(self, redis_broker):
        """Test jobs are claimed first in, first out"""
        for n in range(3):
            await redis_broker.enqueue(QUEUE, "ping", {"n": n})

        claimed = [await redis_broker.claim(QUEUE, lease_ms=30000) for _ in range(3)]

        assert [job.payload["n"] for job in claimed] == [0, 1, 2]
        assert [job.id for job in claimed] == ["1", "2", "3"]
        assert await redis_broker.claim(QUEUE, lease_ms=30000) is None

    async def test_claim_is_exclusive(self, redis_broker):
        """Test a claimed job is leased to one worker and marked active"""
        await redis_broker.enqueue(QUEUE, "ping", {"doc": "a"}, max_attempts=3)

        job = await redis_broker.claim(QUEUE, lease_ms=30000)

        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 1
        assert job.max_attempts == 3
        assert job.lease_token
        assert await redis_broker.claim(QUEUE, lease_ms=30000) is None

    async def test_stale_token_loses_lease(self, redis_broker):
        """Test a wrong lease token cannot extend or settle the job"""
        await redis_broker.enqueue(QUEUE, "ping", {})
        job = await redis_broker.claim(QUEUE, lease_ms=30000)

        with pytest.raises(LeaseLost):
            await redis_broker.extend_lease(QUEUE, job.id, "not-the-token", 30000)
        with pytest.raises(LeaseLost):
            await redis_broker.complete(QUEUE, job.id, "not-the-token")

        await redis_broker.extend_lease(QUEUE, job.id, job.lease_token, 30000)
        await redis_broker.complete(QUEUE, job.id, job.lease_token)

        with pytest.raises(LeaseLost):
            await redis_broker.complete(QUEUE, job.id, job.lease_token)

        stored = await redis_broker.get_job(QUEUE, job.id)
        assert stored.state == JobState.COMPLETED
        assert stored.finished_at is not None


@pytest.mark.asyncio
class TestRedisBrokerRetries:
    """Test failure, delayed retry and lease expiry against a real Redis"""

    async def test_failed_attempt_delayed_then_promoted(self, redis_broker):
        """Test a failed attempt waits out its delay and is claimed again"""
        await redis_broker.enqueue(QUEUE, "ping", {}, max_attempts=3)
        job = await redis_broker.claim(QUEUE, lease_ms=30000)

        state = await redis_broker.fail(QUEUE, job.id, job.lease_token, "transient", retry_delay_ms=1)
        assert state == JobState.DELAYED
        assert (await redis_broker.get_job(QUEUE, job.id)).error == "transient"

        await asyncio.sleep(0.01)
        assert await redis_broker.promote_delayed(QUEUE) == 1

        retried = await redis_broker.claim(QUEUE, lease_ms=30000)
        assert retried.id == job.id
        assert retried.attempts_made == 2

    async def test_delay_not_yet_due(self, redis_broker):
        """Test a retry is not promoted before its delay has passed"""
        await redis_broker.enqueue(QUEUE, "ping", {}, max_attempts=3)
        job = await redis_broker.claim(QUEUE, lease_ms=30000)
        await redis_broker.fail(QUEUE, job.id, job.lease_token, "transient", retry_delay_ms=60000)

        assert await redis_broker.promote_delayed(QUEUE) == 0
        assert await redis_broker.claim(QUEUE, lease_ms=30000) is None

    async def test_fail_without_delay_dead_letters(self, redis_broker):
        """Test a failure without a retry delay moves the job to the failed set"""
        await redis_broker.enqueue(QUEUE, "ping", {})
        job = await redis_broker.claim(QUEUE, lease_ms=30000)

        state = await redis_broker.fail(QUEUE, job.id, job.lease_token, "permanent")

        assert state == JobState.FAILED
        stored = await redis_broker.get_job(QUEUE, job.id)
        assert stored.state == JobState.FAILED
        assert stored.error == "permanent"

    async def test_expired_lease_requeued_to_head(self, redis_broker):
        """Test an expired job goes back ahead of jobs that were still waiting"""
        await redis_broker.enqueue(QUEUE, "ping", {}, max_attempts=3)
        await redis_broker.enqueue(QUEUE, "ping", {}, max_attempts=3)
        first = await redis_broker.claim(QUEUE, lease_ms=1)
        await asyncio.sleep(0.01)

        requeued, dead = await redis_broker.requeue_expired(QUEUE)

        assert (requeued, dead) == ([first.id], [])
        with pytest.raises(LeaseLost):
            await redis_broker.complete(QUEUE, first.id, first.lease_token)

        redelivered = await redis_broker.claim(QUEUE, lease_ms=30000)
        assert redelivered.id == first.id
        assert redelivered.attempts_made == 2
        assert (await redis_broker.claim(QUEUE, lease_ms=30000)).id == "2"

    async def test_expired_lease_at_attempt_limit_dead_lettered(self, redis_broker):
        """Test an expired job with no attempts left is dead-lettered"""
        await redis_broker.enqueue(QUEUE, "ping", {}, max_attempts=1)
        job = await redis_broker.claim(QUEUE, lease_ms=1)
        await asyncio.sleep(0.01)

        requeued, dead = await redis_broker.requeue_expired(QUEUE)

        assert (requeued, dead) == ([], [job.id])
        stored = await redis_broker.get_job(QUEUE, job.id)
        assert stored.state == JobState.FAILED
        assert stored.error == "lease expired"
        assert await redis_broker.claim(QUEUE, lease_ms=30000) is None

    async def test_live_lease_not_requeued(self, redis_broker):
        """Test a job whose lease is still held stays active"""
        await redis_broker.enqueue(QUEUE, "ping", {})
        await redis_broker.claim(QUEUE, lease_ms=30000)

        assert await redis_broker.requeue_expired(QUEUE) == ([], [])


@pytest.mark.asyncio
class TestRedisBrokerBookkeeping:
    """Test retention and counts against a real Redis"""

    async def test_completed_retention(self, redis_broker):
        """Test the completed set keeps only the newest jobs"""
        broker = RedisBroker(redis_broker.client, prefix=redis_broker.prefix, completed_retention=2)
        for _ in range(3):
            await broker.enqueue(QUEUE, "ping", {})
        for _ in range(3):
            job = await broker.claim(QUEUE, lease_ms=30000)
            await broker.complete(QUEUE, job.id, job.lease_token)

        counts = await broker.get_counts(QUEUE)

        assert counts["completed"] == 2
        assert await broker.get_job(QUEUE, "1") is None
        assert (await broker.get_job(QUEUE, "3")).state == JobState.COMPLETED

    async def test_failed_retention(self, redis_broker):
        """Test the dead-letter set keeps only the newest jobs"""
        broker = RedisBroker(redis_broker.client, prefix=redis_broker.prefix, failed_retention=1)
        for _ in range(2):
            await broker.enqueue(QUEUE, "ping", {})
        for _ in range(2):
            job = await broker.claim(QUEUE, lease_ms=30000)
            await broker.fail(QUEUE, job.id, job.lease_token, "permanent")

        assert (await broker.get_counts(QUEUE))["failed"] == 1
        assert await broker.get_job(QUEUE, "1") is None

    async def test_counts_per_state(self, redis_broker):
        """Test counts reflect every state a job can be in"""
        for _ in range(4):
            await redis_broker.enqueue(QUEUE, "ping", {}, max_attempts=3)
        done = await redis_broker.claim(QUEUE, lease_ms=30000)
        await redis_broker.complete(QUEUE, done.id, done.lease_token)
        retrying = await redis_broker.claim(QUEUE, lease_ms=30000)
        await redis_broker.fail(QUEUE, retrying.id, retrying.lease_token, "transient", retry_delay_ms=60000)
        await redis_broker.claim(QUEUE, lease_ms=30000)

        counts = await redis_broker.get_counts(QUEUE)

        assert counts == {"waiting": 1, "active": 1, "delayed": 1, "completed": 1, "failed": 0}
