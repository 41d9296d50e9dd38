"""Cron evaluation — next fire instants for five-field expressions in a timezone.

Expressions are evaluated against the wall clock of the job's zone, so
"0 9 * * *" in Europe/Berlin fires at 09:00 local time on both sides of a
DST change. Wall-clock times repeated when clocks go back fire only once.
Results are always timezone-aware UTC datetimes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from switchboard.kernel.contracts import SwitchboardError

logger = logging.getLogger(__name__)


class CronEvaluationError(SwitchboardError):
    """The expression or timezone can't produce a fire time."""


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise CronEvaluationError(f"Unknown timezone: {tz_name!r}") from exc


def validate_cron(expression: str, tz_name: str = "UTC") -> None:
    """Raise CronEvaluationError unless ``expression`` is a usable 5-field cron."""
    _zone(tz_name)
    if len(expression.split()) != 5 or not croniter.is_valid(expression):
        raise CronEvaluationError(f"Invalid cron expression: {expression!r}")


def following_fire_time(expression: str, tz_name: str, after: datetime) -> datetime:
    """Next occurrence strictly after ``after``, as an aware UTC datetime."""
    validate_cron(expression, tz_name)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    base = after.astimezone(_zone(tz_name))
    wall_clock = base.replace(tzinfo=None)
    try:
        itr = croniter(expression, base)
        nxt = itr.get_next(datetime)
        # On a fall-back night the repeated hour yields the same wall time
        # again; each local wall-clock time fires once.
        while nxt.replace(tzinfo=None) <= wall_clock:
            nxt = itr.get_next(datetime)
    except (ValueError, KeyError) as exc:
        raise CronEvaluationError(
            f"Cannot evaluate cron expression {expression!r}: {exc}"
        ) from exc
    return nxt.astimezone(timezone.utc)


def next_fire_time(
    expression: str, tz_name: str, now: datetime | None = None
) -> datetime:
    """Next occurrence after ``now`` (default: current time)."""
    return following_fire_time(expression, tz_name, now or datetime.now(timezone.utc))
