"""Scheduler backend protocol.

A backend is responsible ONLY for timing: calling the tick callback once
per interval. Which schedules are due, leadership, and submission all
live in SchedulerService, so tests drive ``SchedulerService.tick(now)``
directly without any backend.

Tags:
    autorun, scheduling, protocol, backend

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from autorun.core.models import Schedule

TickCallback = Callable[[], Awaitable[Any]]


@runtime_checkable
class SchedulerBackend(Protocol):
    """Protocol for pluggable tick backends.

    Implementations:
        - AsyncioSchedulerBackend: event-loop task, minute-aligned (default)
    """

    name: str

    def start(self, tick_callback: TickCallback, interval_seconds: float = 60.0) -> None:
        """Start ticking. Must be called from inside a running event loop."""
        ...

    async def stop(self) -> None:
        """Stop ticking, letting an in-progress tick finish."""
        ...

    def health(self) -> dict[str, Any]:
        """Return at least ``healthy``, ``backend``, ``tick_count``, ``last_tick``."""
        ...


@dataclass
class BackendHealth:
    """Structured backend health response."""

    healthy: bool
    backend: str
    tick_count: int = 0
    last_tick: datetime | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "healthy": self.healthy,
            "backend": self.backend,
            "tick_count": self.tick_count,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            **self.extra,
        }


@dataclass
class SubmitResult:
    """Outcome of submitting one schedule for execution."""

    success: bool
    run_id: str | None = None
    status: str | None = None
    conversation_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        return {"runId": self.run_id, "status": self.status, "conversationId": self.conversation_id}


@runtime_checkable
class ScheduleSubmitter(Protocol):
    """Creates a queued run for a schedule and hands it to a queue."""

    async def submit(self, schedule: Schedule) -> SubmitResult: ...
