"""Cron evaluation and the scheduler's due window.

A recurring schedule is evaluated with its cron iterator anchored two
minutes before ``now``. It is due when the computed next fire time lands
in the half-open window ``(now - 1 minute, now]``.

::

      anchor            window start        now
        │                    │               │
    ────┼────────────────────┼───────────────┼────▶ time
        now-2m             now-1m            │
                             (───── due ─────]

The bounded window stops a schedule from firing on every tick once it
becomes due, and a schedule whose fire time is more than a minute old
(process was down) is skipped rather than caught up.

Cron fields are evaluated in the schedule's own timezone; all returned
datetimes are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from autorun.core.errors import ValidationError
from autorun.core.models import Schedule, ScheduleKind

ANCHOR_OFFSET = timedelta(minutes=2)
DUE_WINDOW = timedelta(minutes=1)


def _zone(timezone: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(timezone or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {timezone}", cause=e) from e


def as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC; aware ones are converted."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def validate_cron(expression: str | None) -> str:
    """Return the stripped expression, or raise ValidationError."""
    if not expression or not expression.strip():
        raise ValidationError("cron_expression is required for recurring schedules")
    expression = expression.strip()
    if not croniter.is_valid(expression):
        raise ValidationError(f"Invalid cron expression: {expression}")
    return expression


def validate_timezone(timezone: str | None) -> str:
    _zone(timezone)
    return timezone or "UTC"


def next_fire_time(expression: str, anchor: datetime, timezone: str = "UTC") -> datetime:
    """First fire time strictly after ``anchor``, in UTC.

    Raises:
        ValidationError: expression or timezone cannot be parsed
    """
    tz = _zone(timezone)
    anchor_local = as_utc(anchor).astimezone(tz)
    try:
        iterator = croniter(expression, anchor_local)
    except (ValueError, KeyError) as e:
        raise ValidationError(f"Invalid cron expression: {expression}", cause=e) from e
    return as_utc(iterator.get_next(datetime))


def is_due(expression: str, now: datetime, timezone: str = "UTC") -> bool:
    """True when the cron's next fire time after ``now - 2m`` is in ``(now - 1m, now]``."""
    now = as_utc(now)
    fire_at = next_fire_time(expression, now - ANCHOR_OFFSET, timezone)
    return now - DUE_WINDOW < fire_at <= now


def parse_run_at(value: str) -> datetime:
    """Parse a stored ISO fire-at timestamp into aware UTC."""
    try:
        return as_utc(datetime.fromisoformat(value))
    except ValueError as e:
        raise ValidationError(f"Invalid run_at timestamp: {value}", cause=e) from e


def compute_next_run_at(schedule: Schedule, now: datetime | None = None) -> datetime | None:
    """Next time ``schedule`` will fire, for display.

    Disabled schedules and one-offs that already fired return None.
    """
    if not schedule.enabled:
        return None
    now = as_utc(now or datetime.now(UTC))
    if schedule.kind is ScheduleKind.ONE_OFF:
        if not schedule.run_at:
            return None
        # Still enabled means it has not fired yet, even if overdue
        return parse_run_at(schedule.run_at)
    if not schedule.cron_expression:
        return None
    return next_fire_time(schedule.cron_expression, now, schedule.timezone)
