"""Leader election for the scheduler tick.

Only the leader evaluates schedules, so a multi-instance deployment fires
each due schedule once. Single-instance deployments use StaticLeader.

The Redis elector holds a lease key set with ``SET NX PX``. The holder
renews with a compare-and-``PEXPIRE`` script and resigns with a
compare-and-delete, so an instance whose lease already lapsed can never
extend or delete a newer leader's key.

Tags:
    autorun, scheduling, leader-election, redis, lease

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable
from uuid import uuid4

from redis.exceptions import RedisError

from autorun.core.logging import get_logger

logger = get_logger(__name__)

RENEW_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

RESIGN_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


@runtime_checkable
class LeaderElector(Protocol):
    async def is_leader(self) -> bool: ...

    async def resign(self) -> None: ...


class StaticLeader:
    """Fixed answer; the default for single-instance deployments."""

    def __init__(self, leader: bool = True) -> None:
        self._leader = leader

    async def is_leader(self) -> bool:
        return self._leader

    async def resign(self) -> None:
        self._leader = False


class RedisLeaderElector:
    """Lease-based leader election on a single Redis key.

    Example:
        >>> elector = RedisLeaderElector(redis, key="bull:scheduler-leader", lease_seconds=90)
        >>> if await elector.is_leader():
        ...     await service.tick()
    """

    def __init__(
        self,
        redis: Any,
        key: str = "autorun:scheduler-leader",
        lease_seconds: float = 90.0,
        instance_id: str | None = None,
    ) -> None:
        self.redis = redis
        self.key = key
        self.lease_ms = int(lease_seconds * 1000)
        self.instance_id = instance_id or uuid4().hex

    async def is_leader(self) -> bool:
        """Acquire or renew the lease. Backend errors mean "not leader"."""
        try:
            acquired = await self.redis.set(self.key, self.instance_id, nx=True, px=self.lease_ms)
            if acquired:
                logger.info("scheduler.leader.acquired", instance_id=self.instance_id)
                return True
            renewed = await self.redis.eval(RENEW_SCRIPT, 1, self.key, self.instance_id, self.lease_ms)
            return bool(renewed)
        except RedisError as e:
            logger.error("scheduler.leader.check_failed", instance_id=self.instance_id, error=str(e))
            return False

    async def resign(self) -> None:
        try:
            released = await self.redis.eval(RESIGN_SCRIPT, 1, self.key, self.instance_id)
        except RedisError as e:
            logger.warning("scheduler.leader.resign_failed", error=str(e))
            return
        if released:
            logger.info("scheduler.leader.resigned", instance_id=self.instance_id)
