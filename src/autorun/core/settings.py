"""Settings for the automation core.

All tunables read from ``AUTORUN_*`` environment variables or a ``.env``
file. Queue concurrency is clamped into its hard range instead of being
rejected, so an operator typo degrades to the nearest safe value.

Manifesto:
    Configuration should be explicit, validated, and environment-driven.

    - **Pydantic validation:** Type-checked at startup
    - **Environment-driven:** ``AUTORUN_REDIS_URL``, ``AUTORUN_AGENT_QUEUE_CONCURRENCY``...
    - **Sensible defaults:** Runs single-process on SQLite without Redis

Examples:
    >>> from autorun.core.settings import AutorunSettings
    >>> settings = AutorunSettings(agent_queue_concurrency=50)
    >>> settings.agent_queue_concurrency
    20

Tags:
    settings, configuration, pydantic, environment, autorun

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

AGENT_CONCURRENCY_BOUNDS = (1, 20)
WORKFLOW_CONCURRENCY_BOUNDS = (1, 10)


def _clamp(value: int, bounds: tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


class AutorunSettings(BaseSettings):
    """Process-wide settings.

    Fields
    ──────
    redis_url                     : Redis connection URL; unset means degraded in-process mode
    redis_key_prefix              : Extra namespace in front of every queue prefix
    require_redis                 : Refuse to start without Redis
    database_path                 : SQLite file for schedules, runs and workflows
    agent_queue_concurrency       : Parallel agent runs per process (1..20)
    workflow_queue_concurrency    : Parallel workflow runs per process (1..10)
    *_job_timeout_seconds         : Hard per-job limit, also the agent lock TTL
    *_retry_attempts              : Delivery attempts before a job fails
    *_backoff_seconds             : First exponential backoff delay
    lock_contention_delay_seconds : Re-delivery delay when an agent is busy
    tick_interval_seconds         : Scheduler tick period
    leader_lease_seconds          : Leader key TTL in multi-instance mode
    """

    model_config = SettingsConfigDict(
        env_prefix="AUTORUN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Backends ─────────────────────────────────────────────────
    redis_url: str | None = None
    redis_key_prefix: str = ""
    require_redis: bool = False
    database_path: Path = Field(
        default_factory=lambda: Path.home() / ".autorun" / "autorun.db",
        description="SQLite database file",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None
    service_name: str = "autorun"

    # ── Agent run queue ──────────────────────────────────────────
    agent_queue_name: str = "scheduled-agent-runs"
    agent_queue_prefix: str = "bull"
    agent_queue_concurrency: int = 3
    agent_job_timeout_seconds: float = 30 * 60
    agent_retry_attempts: int = 3
    agent_backoff_seconds: float = 5.0
    lock_contention_delay_seconds: float = 5.0

    # ── Workflow run queue ───────────────────────────────────────
    workflow_queue_name: str = "workflow-scheduled-runs"
    workflow_queue_prefix: str = "bull-workflow"
    workflow_queue_concurrency: int = 2
    workflow_job_timeout_seconds: float = 60 * 60
    workflow_retry_attempts: int = 2
    workflow_backoff_seconds: float = 10.0

    # ── Retention ────────────────────────────────────────────────
    completed_retention_seconds: float = 24 * 3600
    failed_retention_seconds: float = 7 * 24 * 3600

    # ── Scheduler ────────────────────────────────────────────────
    tick_interval_seconds: float = 60.0
    leader_lease_seconds: float = 90.0
    poll_interval_seconds: float = 1.0

    # ── API ──────────────────────────────────────────────────────
    api_prefix: str = "/api/v1"

    @field_validator("agent_queue_concurrency")
    @classmethod
    def _clamp_agent_concurrency(cls, v: int) -> int:
        return _clamp(v, AGENT_CONCURRENCY_BOUNDS)

    @field_validator("workflow_queue_concurrency")
    @classmethod
    def _clamp_workflow_concurrency(cls, v: int) -> int:
        return _clamp(v, WORKFLOW_CONCURRENCY_BOUNDS)

    @field_validator("agent_retry_attempts", "workflow_retry_attempts")
    @classmethod
    def _at_least_one_attempt(cls, v: int) -> int:
        return max(1, v)

    def key_prefix(self, queue_prefix: str) -> str:
        """Full Redis namespace for a queue prefix."""
        if self.redis_key_prefix:
            return f"{self.redis_key_prefix}:{queue_prefix}"
        return queue_prefix


def get_settings() -> AutorunSettings:
    """Load settings from the environment."""
    return AutorunSettings()
