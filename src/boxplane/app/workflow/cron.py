"""Cron expression validation and next-fire computation (croniter + zoneinfo)."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from ..errors import ValidationFailedError

CRON_FIELD_COUNT = 5


def resolve_timezone(tz: str | None) -> ZoneInfo:
    name = tz or 'UTC'
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationFailedError(
            f'Invalid timezone: {name}', details={'timezone': name},
        ) from None


def validate_cron(expression: str, tz: str | None = 'UTC') -> None:
    """Raise ValidationFailedError unless ``expression`` is a 5-field cron."""
    expr = (expression or '').strip()
    if len(expr.split()) != CRON_FIELD_COUNT or not croniter.is_valid(expr):
        raise ValidationFailedError(
            f'Invalid cron expression: {expression}',
            details={'schedule': expression},
        )
    resolve_timezone(tz)


def next_fire_time(
    expression: str,
    tz: str | None = 'UTC',
    *,
    after: datetime | None = None,
) -> datetime:
    """Next firing strictly after ``after``, evaluated in ``tz``, returned in UTC."""
    validate_cron(expression, tz)
    zone = resolve_timezone(tz)
    start = (after or datetime.now(timezone.utc))
    if start.tzinfo is None:
        raise ValueError('after must be timezone-aware')
    local_start = start.astimezone(zone)
    fire = croniter(expression.strip(), local_start).get_next(datetime)
    if fire.tzinfo is None:
        fire = fire.replace(tzinfo=zone)
    return fire.astimezone(timezone.utc)
