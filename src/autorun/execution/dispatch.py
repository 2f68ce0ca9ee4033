"""Run submission with a degraded fallback.

::

    submit(run_id, payload, key)
        │
        ├─ queue configured ── enqueue ── ok ──────────────► DURABLE
        │                         │
        │                         └─ QueueUnavailableError ─┐
        └─ no queue ────────────────────────────────────────┴► SERIALIZED
                                        KeyedSerializer.submit(key, direct(payload))

The serialized path runs the executor directly in this process, one
run per key at a time, with a single attempt and no durable record of
the job. It always logs a WARNING.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

from autorun.core.errors import JobRemovalError, QueueUnavailableError
from autorun.core.logging import get_logger

from .queue import JobQueue
from .serial import KeyedSerializer

logger = get_logger(__name__)

DirectRunner = Callable[[dict[str, Any]], Awaitable[Any]]


class DispatchMode(str, Enum):
    DURABLE = "durable"
    SERIALIZED = "serialized"


class RunDispatcher:
    """Routes run submissions to a JobQueue, or to a KeyedSerializer when it is down."""

    def __init__(
        self,
        name: str,
        queue: JobQueue | None,
        direct: DirectRunner,
        serializer: KeyedSerializer | None = None,
    ) -> None:
        self.name = name
        self.queue = queue
        self.direct = direct
        self.serializer = serializer or KeyedSerializer(name)

    @property
    def durable(self) -> bool:
        return self.queue is not None

    async def submit(self, run_id: str, payload: dict[str, Any], key: str) -> DispatchMode:
        if self.queue is not None:
            try:
                await self.queue.enqueue(run_id, payload)
                return DispatchMode.DURABLE
            except QueueUnavailableError as e:
                logger.warning(
                    "dispatch.queue_unavailable",
                    dispatcher=self.name,
                    run_id=run_id,
                    error=str(e),
                )
        self.serializer.submit(key, lambda: self.direct(payload), label=run_id)
        return DispatchMode.SERIALIZED

    async def remove(self, run_id: str) -> bool:
        """Remove a not-yet-started job. Raises JobRemovalError."""
        if self.queue is None:
            raise JobRemovalError.unavailable(run_id)
        return await self.queue.remove(run_id)

    async def drain(self) -> None:
        await self.serializer.drain()
