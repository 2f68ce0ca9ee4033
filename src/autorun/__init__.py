"""
autorun - automation execution core.

Cron-driven scheduling of agent runs and multi-step workflows, backed by a
durable job queue with per-agent mutual exclusion, retry/backoff and
mid-flight cancellation.

- autorun.core: errors, logging, settings, models, persistence
- autorun.scheduling: cron evaluation, leader election, scheduler tick
- autorun.execution: job queue, locks, abort registry, agent run executor
- autorun.orchestration: workflow ordering, prompt resolution, hand-offs
- autorun.ops: operations consumed by the API, CLI and agent tools
"""

__version__ = "0.4.0"
