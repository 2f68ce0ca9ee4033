"""Scheduling: cron evaluation, leader election, tick backend and the scheduler service."""

from autorun.scheduling.backend import AsyncioSchedulerBackend
from autorun.scheduling.cron import (
    compute_next_run_at,
    is_due,
    next_fire_time,
    validate_cron,
    validate_timezone,
)
from autorun.scheduling.leader import LeaderElector, RedisLeaderElector, StaticLeader
from autorun.scheduling.protocol import (
    BackendHealth,
    SchedulerBackend,
    ScheduleSubmitter,
    SubmitResult,
)
from autorun.scheduling.service import SchedulerService, SchedulerStats, TickReport

__all__ = [
    "AsyncioSchedulerBackend",
    "BackendHealth",
    "LeaderElector",
    "RedisLeaderElector",
    "SchedulerBackend",
    "SchedulerService",
    "SchedulerStats",
    "ScheduleSubmitter",
    "StaticLeader",
    "SubmitResult",
    "TickReport",
    "compute_next_run_at",
    "is_due",
    "next_fire_time",
    "validate_cron",
    "validate_timezone",
]
