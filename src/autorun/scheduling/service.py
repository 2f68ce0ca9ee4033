"""Scheduler service - the once-a-minute tick.

Manifesto:
    The backend only decides *when* to tick; this service decides *what*
    is due. Tests call ``tick(now)`` directly with a fixed clock and never
    start a backend.

Architecture:
    ::

        ┌───────────────────────────────────────────────────────────────┐
        │                       SchedulerService                        │
        │                                                               │
        │   Backend (timing)   LeaderElector   ScheduleRepository       │
        │          │                 │                 │                │
        │          ▼                 ▼                 ▼                │
        │   ┌─────────────────────────────────────────────────────────┐ │
        │   │ tick(now)                                               │ │
        │   │   1. leader?                        no → return         │ │
        │   │   2. enabled recurring + due one-off schedules          │ │
        │   │   3. recurring: is_due(cron, now, tz)   errors isolated │ │
        │   │   4. submitter.submit(schedule)         errors isolated │ │
        │   │   5. one-off + successful submit → disable              │ │
        │   └─────────────────────────────────────────────────────────┘ │
        │                                                               │
        │   tick() never raises; failures land in TickReport + logs.    │
        └───────────────────────────────────────────────────────────────┘

Tags:
    autorun, scheduling, cron, leader-election, service

Doc-Types:
    api-reference, architecture-diagram
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from autorun.core.logging import get_logger
from autorun.core.models import Schedule, ScheduleKind
from autorun.core.repositories import ScheduleRepository

from .cron import as_utc, is_due
from .leader import LeaderElector, StaticLeader
from .protocol import SchedulerBackend, ScheduleSubmitter

logger = get_logger(__name__)


@dataclass
class TickReport:
    """What one tick did."""

    at: datetime
    leader: bool = True
    evaluated: int = 0
    due: list[str] = field(default_factory=list)
    submitted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    disabled: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "leader": self.leader,
            "evaluated": self.evaluated,
            "due": list(self.due),
            "submitted": list(self.submitted),
            "failed": dict(self.failed),
            "disabled": list(self.disabled),
            "error": self.error,
        }


@dataclass
class SchedulerStats:
    """Statistics for the scheduler service."""

    tick_count: int = 0
    skipped_not_leader: int = 0
    schedules_submitted: int = 0
    schedules_failed: int = 0
    last_tick: datetime | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tick_count": self.tick_count,
            "skipped_not_leader": self.skipped_not_leader,
            "schedules_submitted": self.schedules_submitted,
            "schedules_failed": self.schedules_failed,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "last_error": self.last_error,
        }


class SchedulerService:
    """Finds due schedules on the leader and submits them.

    Example:
        >>> service = SchedulerService(
        ...     repository=ScheduleRepository(conn),
        ...     submitter=scheduling_service,
        ...     backend=AsyncioSchedulerBackend(),
        ... )
        >>> report = await service.tick(datetime(2026, 1, 5, 8, 0, tzinfo=UTC))
        >>> report.submitted
        ['sch_...']
    """

    def __init__(
        self,
        repository: ScheduleRepository,
        submitter: ScheduleSubmitter,
        backend: SchedulerBackend | None = None,
        leader: LeaderElector | None = None,
        interval_seconds: float = 60.0,
    ) -> None:
        self.repository = repository
        self.submitter = submitter
        self.backend = backend
        self.leader = leader or StaticLeader()
        self.interval = interval_seconds
        self._stats = SchedulerStats()
        self._running = False

    # === Lifecycle ===

    def start(self) -> None:
        if self._running:
            logger.warning("scheduler.already_running")
            return
        if self.backend is None:
            raise RuntimeError("SchedulerService.start() needs a backend")
        logger.info("scheduler.starting", backend=self.backend.name, interval_seconds=self.interval)
        self.backend.start(self._on_tick, self.interval)
        self._running = True

    async def stop(self) -> None:
        if not self._running:
            return
        if self.backend is not None:
            await self.backend.stop()
        await self.leader.resign()
        self._running = False
        logger.info("scheduler.stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _on_tick(self) -> None:
        await self.tick()

    # === Tick Processing ===

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Evaluate and submit everything due at ``now``. Never raises."""
        now = as_utc(now) if now is not None else datetime.now(UTC)
        report = TickReport(at=now)
        self._stats.tick_count += 1
        self._stats.last_tick = now

        try:
            if not await self.leader.is_leader():
                report.leader = False
                self._stats.skipped_not_leader += 1
                logger.debug("scheduler.tick.not_leader")
                return report

            due = self._collect_due(now, report)
            if due:
                logger.info("scheduler.tick.due", count=len(due), schedule_ids=[s.id for s in due])
            for schedule in due:
                await self._submit(schedule, report)
        except Exception as e:
            report.error = str(e)
            self._stats.last_error = str(e)
            logger.exception("scheduler.tick.failed")
        return report

    def _collect_due(self, now: datetime, report: TickReport) -> list[Schedule]:
        recurring = self.repository.list_enabled_recurring()
        one_off = self.repository.list_due_one_off(now)
        report.evaluated = len(recurring) + len(one_off)

        due: list[Schedule] = []
        for schedule in recurring:
            if not schedule.cron_expression:
                continue
            try:
                if is_due(schedule.cron_expression, now, schedule.timezone):
                    due.append(schedule)
            except Exception as e:
                report.failed[schedule.id] = str(e)
                self._stats.schedules_failed += 1
                logger.warning(
                    "scheduler.cron_invalid",
                    schedule_id=schedule.id,
                    cron_expression=schedule.cron_expression,
                    error=str(e),
                )
        due.extend(one_off)
        report.due = [s.id for s in due]
        return due

    async def _submit(self, schedule: Schedule, report: TickReport) -> None:
        try:
            result = await self.submitter.submit(schedule)
        except Exception as e:
            report.failed[schedule.id] = str(e)
            self._stats.schedules_failed += 1
            logger.exception("scheduler.submit_failed", schedule_id=schedule.id)
            return

        if not result.success:
            report.failed[schedule.id] = result.error or "unknown"
            self._stats.schedules_failed += 1
            logger.error("scheduler.submit_rejected", schedule_id=schedule.id, error=result.error)
            return

        report.submitted.append(schedule.id)
        self._stats.schedules_submitted += 1
        logger.info("scheduler.submitted", schedule_id=schedule.id, run_id=result.run_id)

        if schedule.kind is ScheduleKind.ONE_OFF:
            try:
                self.repository.disable(schedule.id)
                report.disabled.append(schedule.id)
            except Exception:
                logger.exception("scheduler.disable_failed", schedule_id=schedule.id)

    # === Health & Stats ===

    def health(self) -> dict[str, Any]:
        backend_health = self.backend.health() if self.backend is not None else {}
        return {
            "healthy": self._running and backend_health.get("healthy", False),
            "running": self._running,
            "backend": backend_health,
            "schedules_enabled": self.repository.count_enabled(),
            "stats": self._stats.to_dict(),
        }

    def get_stats(self) -> SchedulerStats:
        return self._stats

    def reset_stats(self) -> None:
        self._stats = SchedulerStats()
