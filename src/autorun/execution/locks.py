"""Per-agent mutual exclusion.

At most one run per agent executes at any instant. The lock entry is
``{prefix}:agent-lock:{agentId} → runId`` with a TTL equal to the job
timeout, so a crashed holder frees the agent when the TTL lapses.

Release is compare-and-delete: the key is removed only while it still
holds the releasing run's id. A slow holder whose TTL already expired
cannot delete the lock a newer run has since acquired.

::

    acquire:  SET {prefix}:agent-lock:{agent} {run} PX {ttl_ms} NX
    release:  if GET key == run then DEL key   (single Lua script)

Tags:
    autorun, locking, redis, mutual-exclusion, compare-and-delete

Doc-Types:
    api-reference
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from redis.exceptions import RedisError

from autorun.core.logging import get_logger

logger = get_logger(__name__)

RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def agent_lock_key(prefix: str, agent_id: str) -> str:
    return f"{prefix}:agent-lock:{agent_id}"


@runtime_checkable
class AgentLockService(Protocol):
    async def acquire(self, agent_id: str, run_id: str, ttl_seconds: float) -> bool: ...

    async def release(self, agent_id: str, run_id: str) -> bool: ...

    async def holder(self, agent_id: str) -> str | None: ...


class RedisLockService:
    """Agent locks on Redis.

    Backend errors are logged and reported as "not acquired" / "not
    released"; the queue then defers the job and the TTL bounds any
    lock left behind.
    """

    def __init__(self, redis: Any, prefix: str = "bull") -> None:
        self.redis = redis
        self.prefix = prefix

    def key(self, agent_id: str) -> str:
        return agent_lock_key(self.prefix, agent_id)

    async def acquire(self, agent_id: str, run_id: str, ttl_seconds: float) -> bool:
        try:
            result = await self.redis.set(
                self.key(agent_id), run_id, nx=True, px=max(1, int(ttl_seconds * 1000))
            )
        except RedisError as e:
            logger.error("lock.acquire_failed", agent_id=agent_id, run_id=run_id, error=str(e))
            return False
        return bool(result)

    async def release(self, agent_id: str, run_id: str) -> bool:
        try:
            result = await self.redis.eval(RELEASE_SCRIPT, 1, self.key(agent_id), run_id)
        except RedisError as e:
            logger.error("lock.release_failed", agent_id=agent_id, run_id=run_id, error=str(e))
            return False
        return bool(result)

    async def holder(self, agent_id: str) -> str | None:
        try:
            value = await self.redis.get(self.key(agent_id))
        except RedisError as e:
            logger.error("lock.holder_failed", agent_id=agent_id, error=str(e))
            return None
        if isinstance(value, bytes):
            return value.decode()
        return value


class InMemoryLockService:
    """Process-local agent locks with the same TTL and ownership rules."""

    def __init__(self, prefix: str = "bull", clock: Callable[[], float] = time.monotonic) -> None:
        self.prefix = prefix
        self._clock = clock
        self._locks: dict[str, tuple[str, float]] = {}

    def _live(self, key: str) -> tuple[str, float] | None:
        entry = self._locks.get(key)
        if entry is not None and entry[1] <= self._clock():
            del self._locks[key]
            return None
        return entry

    async def acquire(self, agent_id: str, run_id: str, ttl_seconds: float) -> bool:
        key = agent_lock_key(self.prefix, agent_id)
        if self._live(key) is not None:
            return False
        self._locks[key] = (run_id, self._clock() + ttl_seconds)
        return True

    async def release(self, agent_id: str, run_id: str) -> bool:
        key = agent_lock_key(self.prefix, agent_id)
        entry = self._live(key)
        if entry is None or entry[0] != run_id:
            return False
        del self._locks[key]
        return True

    async def holder(self, agent_id: str) -> str | None:
        entry = self._live(agent_lock_key(self.prefix, agent_id))
        return entry[0] if entry else None
