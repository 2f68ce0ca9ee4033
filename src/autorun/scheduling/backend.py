"""Event-loop scheduler backend.

┌──────────────────────────────────────────────────────────────────────┐
│  ASYNCIO BACKEND                                                      │
│                                                                       │
│   start()  ──► loop.create_task(_loop)                                │
│                                                                       │
│   _loop:                                                              │
│       while not stopping:                                             │
│           sleep until next boundary   (minute-aligned when 60s)       │
│           tick_count += 1                                             │
│           await tick_callback()       errors logged, never raised     │
│                                                                       │
│   stop()   ──► set stop event, wait for current tick, cancel sleep    │
└──────────────────────────────────────────────────────────────────────┘

Ticks run on the same event loop as the queue workers, so a tick's
database and queue calls interleave cooperatively with running jobs.
"""

from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime
from typing import Any

from autorun.core.logging import get_logger

from .protocol import BackendHealth, TickCallback

logger = get_logger(__name__)


def seconds_until_boundary(interval_seconds: float, now: float | None = None) -> float:
    """Seconds until the next wall-clock multiple of ``interval_seconds``."""
    now = time.time() if now is None else now
    remainder = now % interval_seconds
    return interval_seconds - remainder if remainder else interval_seconds


class AsyncioSchedulerBackend:
    """Minute-aligned tick loop running as an asyncio task.

    Example:
        >>> backend = AsyncioSchedulerBackend()
        >>> backend.start(service.tick, interval_seconds=60)
        >>> ...
        >>> await backend.stop()
    """

    name = "asyncio"

    def __init__(self, align: bool = True) -> None:
        self._align = align
        self._task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._tick_count = 0
        self._last_tick: datetime | None = None
        self._interval: float = 60.0

    def start(self, tick_callback: TickCallback, interval_seconds: float = 60.0) -> None:
        if self._task is not None and not self._task.done():
            logger.warning("scheduler.backend.already_started", backend=self.name)
            return

        self._interval = interval_seconds
        self._stop_event = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(
            self._loop(tick_callback), name="autorun-scheduler"
        )

    async def _loop(self, tick_callback: TickCallback) -> None:
        assert self._stop_event is not None
        logger.info("scheduler.backend.started", backend=self.name, interval_seconds=self._interval)
        while not self._stop_event.is_set():
            delay = seconds_until_boundary(self._interval) if self._align else self._interval
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                break
            except TimeoutError:
                pass

            self._tick_count += 1
            self._last_tick = datetime.now(UTC)
            try:
                await tick_callback()
            except Exception:
                logger.exception("scheduler.backend.tick_failed", tick=self._tick_count)

        logger.info("scheduler.backend.stopped", backend=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except TimeoutError:
            logger.warning("scheduler.backend.stop_timeout", backend=self.name)
            self._task.cancel()
        self._task = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def tick_count(self) -> int:
        return self._tick_count

    @property
    def last_tick(self) -> datetime | None:
        return self._last_tick

    def health(self) -> dict[str, Any]:
        return self.get_health().to_dict()

    def get_health(self) -> BackendHealth:
        return BackendHealth(
            healthy=self.is_running,
            backend=self.name,
            tick_count=self._tick_count,
            last_tick=self._last_tick,
            extra={"interval_seconds": self._interval},
        )
