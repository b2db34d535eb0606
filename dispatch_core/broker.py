"""Redis-backed durable job broker with leases and delayed retries.

Every state transition is a single Lua script, so each one is atomic on the
Redis server. A claimed job is held under a lease: the worker must extend it
while executing, and a job whose lease expires is handed back to the queue
(or dead-lettered when it has no attempts left).
"""

import json
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from .exceptions import BrokerUnavailable, LeaseLost, PayloadNotSerializable
from .models import Job, JobState


logger = structlog.get_logger(__name__)

DEFAULT_PREFIX = "continuum"
DEFAULT_RETENTION = 200


# Drops the oldest members of a finished set beyond the retention count,
# together with their job hashes.
_TRIM = """
local function trim(set_key, job_prefix, keep)
  local excess = redis.call("ZCARD", set_key) - keep
  if excess > 0 then
    local stale = redis.call("ZRANGE", set_key, 0, excess - 1)
    for _, old in ipairs(stale) do
      redis.call("DEL", job_prefix .. old)
    end
    redis.call("ZREMRANGEBYRANK", set_key, 0, excess - 1)
  end
end
"""

# KEYS: id counter, wait
# ARGV: job prefix, name, data, timestamp, max attempts
ENQUEUE_SCRIPT = """
local id = redis.call("INCR", KEYS[1])
local job_key = ARGV[1] .. id
redis.call("HSET", job_key,
  "name", ARGV[2], "data", ARGV[3], "timestamp", ARGV[4],
  "attempts_made", 0, "max_attempts", ARGV[5], "state", "waiting")
redis.call("LPUSH", KEYS[2], id)
return tostring(id)
"""

# KEYS: wait, active
# ARGV: job prefix, lease token, lease deadline
CLAIM_SCRIPT = """
local id = redis.call("RPOP", KEYS[1])
if not id then
  return false
end
local job_key = ARGV[1] .. id
redis.call("ZADD", KEYS[2], ARGV[3], id)
redis.call("HSET", job_key, "state", "active", "lock", ARGV[2])
redis.call("HINCRBY", job_key, "attempts_made", 1)
local reply = redis.call("HGETALL", job_key)
table.insert(reply, 1, id)
return reply
"""

# KEYS: active
# ARGV: job key, lease token, lease deadline, job id
EXTEND_SCRIPT = """
if redis.call("HGET", ARGV[1], "lock") ~= ARGV[2] then
  return 0
end
redis.call("ZADD", KEYS[1], "XX", ARGV[3], ARGV[4])
return 1
"""

# KEYS: active, completed
# ARGV: job prefix, job id, lease token, finished at, retention
COMPLETE_SCRIPT = _TRIM + """
local job_key = ARGV[1] .. ARGV[2]
if redis.call("HGET", job_key, "lock") ~= ARGV[3] then
  return 0
end
redis.call("ZREM", KEYS[1], ARGV[2])
redis.call("HDEL", job_key, "lock", "error")
redis.call("HSET", job_key, "state", "completed", "finished_at", ARGV[4])
redis.call("ZADD", KEYS[2], ARGV[4], ARGV[2])
trim(KEYS[2], ARGV[1], tonumber(ARGV[5]))
return 1
"""

# KEYS: active, delayed, failed
# ARGV: job prefix, job id, lease token, error, now, retry at ("" to dead-letter), retention
FAIL_SCRIPT = _TRIM + """
local job_key = ARGV[1] .. ARGV[2]
if redis.call("HGET", job_key, "lock") ~= ARGV[3] then
  return 0
end
redis.call("ZREM", KEYS[1], ARGV[2])
redis.call("HDEL", job_key, "lock")
if ARGV[6] ~= "" then
  redis.call("HSET", job_key, "state", "delayed", "error", ARGV[4])
  redis.call("ZADD", KEYS[2], ARGV[6], ARGV[2])
  return 1
end
redis.call("HSET", job_key, "state", "failed", "error", ARGV[4], "finished_at", ARGV[5])
redis.call("ZADD", KEYS[3], ARGV[5], ARGV[2])
trim(KEYS[3], ARGV[1], tonumber(ARGV[7]))
return 2
"""

# KEYS: active, wait, failed
# ARGV: job prefix, now, retention
REQUEUE_EXPIRED_SCRIPT = _TRIM + """
local expired = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[2])
local requeued = {}
local dead = {}
for _, id in ipairs(expired) do
  local job_key = ARGV[1] .. id
  redis.call("ZREM", KEYS[1], id)
  redis.call("HDEL", job_key, "lock")
  local made = tonumber(redis.call("HGET", job_key, "attempts_made") or "0")
  local limit = tonumber(redis.call("HGET", job_key, "max_attempts") or "1")
  if made >= limit then
    redis.call("HSET", job_key, "state", "failed", "error", "lease expired", "finished_at", ARGV[2])
    redis.call("ZADD", KEYS[3], ARGV[2], id)
    table.insert(dead, id)
  else
    redis.call("HSET", job_key, "state", "waiting")
    redis.call("RPUSH", KEYS[2], id)
    table.insert(requeued, id)
  end
end
trim(KEYS[3], ARGV[1], tonumber(ARGV[3]))
return {requeued, dead}
"""

# KEYS: delayed, wait
# ARGV: job prefix, now
PROMOTE_DELAYED_SCRIPT = """
local due = redis.call("ZRANGEBYSCORE", KEYS[1], "-inf", ARGV[2])
for _, id in ipairs(due) do
  redis.call("ZREM", KEYS[1], id)
  redis.call("HSET", ARGV[1] .. id, "state", "waiting")
  redis.call("LPUSH", KEYS[2], id)
end
return #due
"""


def now_ms() -> int:
    return int(time.time() * 1000)


def encode_payload(payload: Any) -> str:
    """Encode a payload as JSON or raise ``PayloadNotSerializable``."""
    try:
        return json.dumps(payload, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise PayloadNotSerializable(f"Job payload is not JSON serializable: {e}") from e


class RedisBroker:
    """Durable queues on top of a single ``redis.asyncio`` client.

    The client is owned by whoever created the broker. One client is safe to
    share across concurrent claims because redis-py pools its connections.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        prefix: str = DEFAULT_PREFIX,
        completed_retention: int = DEFAULT_RETENTION,
        failed_retention: int = DEFAULT_RETENTION,
    ):
        self.client = client
        self.prefix = prefix
        self.completed_retention = completed_retention
        self.failed_retention = failed_retention

        self._enqueue = client.register_script(ENQUEUE_SCRIPT)
        self._claim = client.register_script(CLAIM_SCRIPT)
        self._extend = client.register_script(EXTEND_SCRIPT)
        self._complete = client.register_script(COMPLETE_SCRIPT)
        self._fail = client.register_script(FAIL_SCRIPT)
        self._requeue_expired = client.register_script(REQUEUE_EXPIRED_SCRIPT)
        self._promote_delayed = client.register_script(PROMOTE_DELAYED_SCRIPT)

    @classmethod
    def create_client(
        cls,
        host: str,
        port: int,
        connect_timeout: float = 5.0,
        socket_timeout: Optional[float] = 10.0,
    ) -> aioredis.Redis:
        return aioredis.Redis(
            host=host,
            port=port,
            decode_responses=True,
            socket_connect_timeout=connect_timeout,
            socket_timeout=socket_timeout,
        )

    @classmethod
    @asynccontextmanager
    async def connect(cls, host: str, port: int, prefix: str = DEFAULT_PREFIX, **client_options):
        """Open a broker on a fresh client and close it on exit."""
        broker = cls(cls.create_client(host, port, **client_options), prefix=prefix)
        try:
            yield broker
        finally:
            await broker.close()

    def queue_key(self, queue_name: str, suffix: str) -> str:
        return f"{self.prefix}:{queue_name}:{suffix}"

    def job_prefix(self, queue_name: str) -> str:
        return self.queue_key(queue_name, "job:")

    async def _call(self, operation: str, awaitable):
        try:
            return await awaitable
        except (RedisError, OSError) as e:
            logger.warning("broker_call_failed", operation=operation, error=str(e))
            raise BrokerUnavailable(f"Broker {operation} failed: {e}", operation=operation) from e

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping()))

    async def close(self):
        """Release the client's connections."""
        try:
            await self.client.aclose()
        except (RedisError, OSError) as e:
            logger.debug("broker_close_failed", error=str(e))

    async def enqueue(
        self,
        queue_name: str,
        name: str,
        payload: Dict[str, Any],
        max_attempts: int = 1,
    ) -> str:
        """Append a job to the queue and return its broker-assigned id."""
        data = encode_payload(payload)
        job_id = await self._call("enqueue", self._enqueue(
            keys=[self.queue_key(queue_name, "id"), self.queue_key(queue_name, "wait")],
            args=[self.job_prefix(queue_name), name, data, now_ms(), max_attempts],
        ))
        return str(job_id)

    async def claim(self, queue_name: str, lease_ms: int) -> Optional[Job]:
        """Take the next waiting job under a new lease, or ``None`` if idle."""
        token = uuid.uuid4().hex
        reply = await self._call("claim", self._claim(
            keys=[self.queue_key(queue_name, "wait"), self.queue_key(queue_name, "active")],
            args=[self.job_prefix(queue_name), token, now_ms() + lease_ms],
        ))
        if not reply:
            return None

        job_id, fields = str(reply[0]), reply[1:]
        raw = dict(zip(fields[0::2], fields[1::2]))
        job = Job.from_redis(queue_name, job_id, raw)
        job.lease_token = token
        return job

    async def extend_lease(self, queue_name: str, job_id: str, token: str, lease_ms: int):
        extended = await self._call("extend_lease", self._extend(
            keys=[self.queue_key(queue_name, "active")],
            args=[self.job_prefix(queue_name) + job_id, token, now_ms() + lease_ms, job_id],
        ))
        if not extended:
            raise LeaseLost(queue_name, job_id)

    async def complete(self, queue_name: str, job_id: str, token: str):
        """Mark a leased job completed and retire it to the completed set."""
        done = await self._call("complete", self._complete(
            keys=[self.queue_key(queue_name, "active"), self.queue_key(queue_name, "completed")],
            args=[self.job_prefix(queue_name), job_id, token, now_ms(), self.completed_retention],
        ))
        if not done:
            raise LeaseLost(queue_name, job_id)

    async def fail(
        self,
        queue_name: str,
        job_id: str,
        token: str,
        error: str,
        retry_delay_ms: Optional[int] = None,
    ) -> JobState:
        """Record a failed attempt.

        With a retry delay the job is parked in the delayed set; without one
        it is dead-lettered. Returns the state the job moved to.
        """
        now = now_ms()
        retry_at = "" if retry_delay_ms is None else now + retry_delay_ms
        result = await self._call("fail", self._fail(
            keys=[
                self.queue_key(queue_name, "active"),
                self.queue_key(queue_name, "delayed"),
                self.queue_key(queue_name, "failed"),
            ],
            args=[self.job_prefix(queue_name), job_id, token, error, now, retry_at, self.failed_retention],
        ))
        if not result:
            raise LeaseLost(queue_name, job_id)
        return JobState.DELAYED if int(result) == 1 else JobState.FAILED

    async def requeue_expired(self, queue_name: str) -> Tuple[List[str], List[str]]:
        """Hand back jobs whose lease expired. Returns (requeued, dead-lettered)."""
        requeued, dead = await self._call("requeue_expired", self._requeue_expired(
            keys=[
                self.queue_key(queue_name, "active"),
                self.queue_key(queue_name, "wait"),
                self.queue_key(queue_name, "failed"),
            ],
            args=[self.job_prefix(queue_name), now_ms(), self.failed_retention],
        ))
        return [str(i) for i in requeued], [str(i) for i in dead]

    async def promote_delayed(self, queue_name: str) -> int:
        """Move delayed jobs whose retry time has come back to waiting."""
        promoted = await self._call("promote_delayed", self._promote_delayed(
            keys=[self.queue_key(queue_name, "delayed"), self.queue_key(queue_name, "wait")],
            args=[self.job_prefix(queue_name), now_ms()],
        ))
        return int(promoted or 0)

    async def get_job(self, queue_name: str, job_id: str) -> Optional[Job]:
        raw = await self._call("get_job", self.client.hgetall(self.job_prefix(queue_name) + job_id))
        if not raw:
            return None
        return Job.from_redis(queue_name, job_id, raw)

    async def get_counts(self, queue_name: str) -> Dict[str, int]:
        """Number of jobs per state for one queue."""
        async with self.client.pipeline(transaction=False) as pipe:
            pipe.llen(self.queue_key(queue_name, "wait"))
            pipe.zcard(self.queue_key(queue_name, "active"))
            pipe.zcard(self.queue_key(queue_name, "delayed"))
            pipe.zcard(self.queue_key(queue_name, "completed"))
            pipe.zcard(self.queue_key(queue_name, "failed"))
            counts = await self._call("get_counts", pipe.execute())

        states = [JobState.WAITING, JobState.ACTIVE, JobState.DELAYED, JobState.COMPLETED, JobState.FAILED]
        return {state.value: int(count) for state, count in zip(states, counts)}
