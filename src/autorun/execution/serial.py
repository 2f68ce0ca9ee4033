"""Per-key in-process serialization (degraded mode).

When the durable queue is unavailable, submissions are chained per target
key (agent id or workflow id): same-key runs execute one at a time in
submission order, different keys run concurrently.

This path is best effort. Nothing is persisted, a process restart loses
every pending link, and there is no retry. Every submission through it
logs a WARNING so operators see that the durable queue is not in use.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from autorun.core.logging import get_logger

logger = get_logger(__name__)


class KeyedSerializer:
    """Chains coroutine factories per key onto the running event loop."""

    def __init__(self, name: str = "serial") -> None:
        self.name = name
        self._tails: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()

    def submit(self, key: str, factory: Callable[[], Awaitable[Any]], *, label: str = "") -> asyncio.Task:
        """Run ``factory()`` after every earlier submission for ``key`` has finished."""
        previous = self._tails.get(key)
        logger.warning(
            "queue.degraded.serialized",
            serializer=self.name,
            key=key,
            label=label,
            queued_behind=previous is not None and not previous.done(),
        )

        async def _link() -> None:
            if previous is not None:
                await asyncio.wait([previous])
            try:
                await factory()
            except Exception:
                logger.exception("queue.degraded.link_failed", serializer=self.name, key=key, label=label)

        task = asyncio.get_running_loop().create_task(_link(), name=f"{self.name}:{key}")
        self._tails[key] = task
        self._tasks.add(task)
        task.add_done_callback(lambda t, k=key: self._forget(k, t))
        return task

    def _forget(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._tails.get(key) is task:
            del self._tails[key]

    def pending(self, key: str | None = None) -> int:
        if key is None:
            return len(self._tasks)
        return sum(1 for t in self._tasks if t.get_name() == f"{self.name}:{key}")

    async def drain(self) -> None:
        """Wait for every chained task to finish."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))
