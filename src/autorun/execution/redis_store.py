"""Redis-backed JobStore.

Key layout under ``{prefix}:{queue}``::

    :job:{id}     hash   id, name, data(JSON), state, attempts_made, timestamps
    :wait         list   FIFO of waiting job ids
    :delayed      zset   score = available_at
    :active       zset   score = processed_at (stalled detection)
    :completed    zset   score = finished_at  (retention)
    :failed       zset   score = finished_at  (retention)

Every transition is a single Lua script, so two workers (or two
processes) can never claim the same job, and ``add`` rejects an existing
id atomically.

Requires: ``redis`` (``redis.asyncio`` client, created by the caller)
"""

from __future__ import annotations

import json
from typing import Any

from redis.exceptions import RedisError

from autorun.core.errors import JobRemovalError, QueueUnavailableError
from autorun.core.logging import get_logger

from .queue import STALLED_REASON, Job, JobState, StalledJobs

logger = get_logger(__name__)

ADD_SCRIPT = """
if redis.call('exists', KEYS[1]) == 1 then
    return 0
end
redis.call('hset', KEYS[1],
    'id', ARGV[1], 'name', ARGV[2], 'data', ARGV[3],
    'state', 'waiting', 'attempts_made', 0, 'created_at', ARGV[4])
redis.call('rpush', KEYS[2], ARGV[1])
return 1
"""

# KEYS: wait, delayed, active   ARGV: now, job key prefix
CLAIM_SCRIPT = """
local due = redis.call('zrangebyscore', KEYS[2], '-inf', ARGV[1])
for _, id in ipairs(due) do
    redis.call('zrem', KEYS[2], id)
    redis.call('rpush', KEYS[1], id)
    redis.call('hset', ARGV[2] .. id, 'state', 'waiting')
end
while true do
    local id = redis.call('lpop', KEYS[1])
    if not id then
        return false
    end
    local key = ARGV[2] .. id
    if redis.call('hget', key, 'state') == 'waiting' then
        redis.call('hset', key, 'state', 'active', 'processed_at', ARGV[1])
        redis.call('zadd', KEYS[3], ARGV[1], id)
        return redis.call('hgetall', key)
    end
end
"""

# KEYS: job, active, target set   ARGV: id, now, state, reason, attempts_made
FINISH_SCRIPT = """
redis.call('hset', KEYS[1], 'state', ARGV[3], 'finished_at', ARGV[2], 'attempts_made', ARGV[5])
if ARGV[4] ~= '' then
    redis.call('hset', KEYS[1], 'failed_reason', ARGV[4])
end
redis.call('zrem', KEYS[2], ARGV[1])
redis.call('zadd', KEYS[3], ARGV[2], ARGV[1])
return 1
"""

# KEYS: job, active, delayed   ARGV: id, available_at, attempts_made, reason
DELAY_SCRIPT = """
redis.call('hset', KEYS[1], 'state', 'delayed', 'available_at', ARGV[2], 'attempts_made', ARGV[3])
if ARGV[4] ~= '' then
    redis.call('hset', KEYS[1], 'failed_reason', ARGV[4])
end
redis.call('zrem', KEYS[2], ARGV[1])
redis.call('zadd', KEYS[3], ARGV[2], ARGV[1])
return 1
"""

# KEYS: job, wait, delayed, completed, failed   ARGV: id
REMOVE_SCRIPT = """
local state = redis.call('hget', KEYS[1], 'state')
if not state then
    return -1
end
if state == 'active' then
    return 0
end
redis.call('lrem', KEYS[2], 0, ARGV[1])
redis.call('zrem', KEYS[3], ARGV[1])
redis.call('zrem', KEYS[4], ARGV[1])
redis.call('zrem', KEYS[5], ARGV[1])
redis.call('del', KEYS[1])
return 1
"""

# KEYS: completed, failed   ARGV: completed_before, failed_before, job key prefix
CLEAN_SCRIPT = """
local removed = 0
for i, before in ipairs({ARGV[1], ARGV[2]}) do
    local ids = redis.call('zrangebyscore', KEYS[i], '-inf', '(' .. before)
    for _, id in ipairs(ids) do
        redis.call('del', ARGV[3] .. id)
        removed = removed + 1
    end
    redis.call('zremrangebyscore', KEYS[i], '-inf', '(' .. before)
end
return removed
"""

# KEYS: active, wait, failed   ARGV: started_before, job prefix, max_attempts, now, reason
RECOVER_SCRIPT = """
local ids = redis.call('zrangebyscore', KEYS[1], '-inf', '(' .. ARGV[1])
local requeued, failed = {}, {}
for _, id in ipairs(ids) do
    local key = ARGV[2] .. id
    local attempts = tonumber(redis.call('hget', key, 'attempts_made') or '0') + 1
    redis.call('zrem', KEYS[1], id)
    if attempts >= tonumber(ARGV[3]) then
        redis.call('hset', key, 'state', 'failed', 'attempts_made', attempts,
            'finished_at', ARGV[4], 'failed_reason', ARGV[5])
        redis.call('zadd', KEYS[3], ARGV[4], id)
        table.insert(failed, id)
    else
        redis.call('hset', key, 'state', 'waiting', 'attempts_made', attempts)
        redis.call('rpush', KEYS[2], id)
        table.insert(requeued, id)
    end
end
return {requeued, failed}
"""


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode()
    return str(value)


def _float_or_none(value: Any) -> float | None:
    if value is None or value == "" or value == b"":
        return None
    return float(_text(value))


def job_from_hash(fields: dict[str, Any]) -> Job:
    """Build a Job from HGETALL output (bytes or str keys)."""
    data = {_text(k): v for k, v in fields.items()}
    reason = data.get("failed_reason")
    return Job(
        id=_text(data["id"]),
        name=_text(data.get("name", "")),
        data=json.loads(_text(data.get("data", "{}"))),
        state=JobState(_text(data.get("state", "waiting"))),
        attempts_made=int(_text(data.get("attempts_made", 0))),
        created_at=_float_or_none(data.get("created_at")) or 0.0,
        processed_at=_float_or_none(data.get("processed_at")),
        finished_at=_float_or_none(data.get("finished_at")),
        available_at=_float_or_none(data.get("available_at")),
        failed_reason=_text(reason) if reason is not None else None,
    )


def _pairs_to_dict(flat: list[Any]) -> dict[Any, Any]:
    return dict(zip(flat[::2], flat[1::2], strict=False))


class RedisJobStore:
    """JobStore on Redis using one Lua script per transition.

    Example:
        >>> import redis.asyncio as aioredis
        >>> client = aioredis.from_url("redis://localhost:6379")
        >>> store = RedisJobStore(client, prefix="bull", queue="scheduled-agent-runs")
        >>> queue = JobQueue("scheduled-agent-runs", store, concurrency=3)
    """

    def __init__(self, redis: Any, prefix: str, queue: str) -> None:
        self.redis = redis
        self.namespace = f"{prefix}:{queue}"
        self.job_prefix = f"{self.namespace}:job:"
        self.wait_key = f"{self.namespace}:wait"
        self.delayed_key = f"{self.namespace}:delayed"
        self.active_key = f"{self.namespace}:active"
        self.completed_key = f"{self.namespace}:completed"
        self.failed_key = f"{self.namespace}:failed"

    def job_key(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"

    async def _eval(self, script: str, keys: list[str], args: list[Any]) -> Any:
        try:
            return await self.redis.eval(script, len(keys), *keys, *args)
        except RedisError as e:
            raise QueueUnavailableError(f"Queue backend error: {e}", cause=e) from e

    async def add(self, job: Job) -> bool:
        inserted = await self._eval(
            ADD_SCRIPT,
            [self.job_key(job.id), self.wait_key],
            [job.id, job.name, json.dumps(job.data), job.created_at],
        )
        return bool(inserted)

    async def get(self, job_id: str) -> Job | None:
        try:
            fields = await self.redis.hgetall(self.job_key(job_id))
        except RedisError as e:
            raise QueueUnavailableError(f"Queue backend error: {e}", cause=e) from e
        if not fields:
            return None
        return job_from_hash(fields)

    async def claim(self, now: float) -> Job | None:
        flat = await self._eval(
            CLAIM_SCRIPT,
            [self.wait_key, self.delayed_key, self.active_key],
            [now, self.job_prefix],
        )
        if not flat:
            return None
        return job_from_hash(_pairs_to_dict(flat))

    async def complete(self, job_id: str, now: float) -> None:
        job = await self.get(job_id)
        attempts = job.attempts_made if job else 0
        await self._eval(
            FINISH_SCRIPT,
            [self.job_key(job_id), self.active_key, self.completed_key],
            [job_id, now, JobState.COMPLETED.value, "", attempts],
        )

    async def fail(self, job_id: str, reason: str, attempts_made: int, now: float) -> None:
        await self._eval(
            FINISH_SCRIPT,
            [self.job_key(job_id), self.active_key, self.failed_key],
            [job_id, now, JobState.FAILED.value, reason, attempts_made],
        )

    async def delay(
        self, job_id: str, available_at: float, attempts_made: int, reason: str | None
    ) -> None:
        await self._eval(
            DELAY_SCRIPT,
            [self.job_key(job_id), self.active_key, self.delayed_key],
            [job_id, available_at, attempts_made, reason or ""],
        )

    async def remove(self, job_id: str) -> None:
        try:
            result = await self.redis.eval(
                REMOVE_SCRIPT,
                5,
                self.job_key(job_id),
                self.wait_key,
                self.delayed_key,
                self.completed_key,
                self.failed_key,
                job_id,
            )
        except RedisError as e:
            logger.error("queue.remove_failed", job_id=job_id, error=str(e))
            raise JobRemovalError.unavailable(job_id) from e
        if result == -1:
            raise JobRemovalError.not_found(job_id)
        if result == 0:
            raise JobRemovalError.active(job_id)

    async def clean(self, completed_before: float, failed_before: float) -> int:
        removed = await self._eval(
            CLEAN_SCRIPT,
            [self.completed_key, self.failed_key],
            [completed_before, failed_before, self.job_prefix],
        )
        return int(removed or 0)

    async def recover_stalled(
        self, started_before: float, max_attempts: int, now: float
    ) -> StalledJobs:
        reply = await self._eval(
            RECOVER_SCRIPT,
            [self.active_key, self.wait_key, self.failed_key],
            [started_before, self.job_prefix, max_attempts, now, STALLED_REASON],
        )
        requeued, failed = reply or ([], [])
        return StalledJobs(
            requeued=[_text(i) for i in requeued or []],
            failed=[_text(i) for i in failed or []],
        )

    async def counts(self) -> dict[str, int]:
        try:
            async with self.redis.pipeline(transaction=False) as pipe:
                pipe.llen(self.wait_key)
                pipe.zcard(self.delayed_key)
                pipe.zcard(self.active_key)
                pipe.zcard(self.completed_key)
                pipe.zcard(self.failed_key)
                waiting, delayed, active, completed, failed = await pipe.execute()
        except RedisError as e:
            raise QueueUnavailableError(f"Queue backend error: {e}", cause=e) from e
        return {
            JobState.WAITING.value: int(waiting),
            JobState.DELAYED.value: int(delayed),
            JobState.ACTIVE.value: int(active),
            JobState.COMPLETED.value: int(completed),
            JobState.FAILED.value: int(failed),
        }

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            raise QueueUnavailableError(f"Queue backend error: {e}", cause=e) from e
