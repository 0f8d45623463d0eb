"""
Next-fire-time computation for job schedules.

Everything here is pure: no I/O, no clock reads. All instants going in and out
are timezone-aware UTC datetimes.

Cron expressions are evaluated on local wall-clock time in the schedule's
timezone and each candidate wall time is then resolved to an instant:

    - a wall time inside a DST gap (spring forward) does not exist, it resolves
      to the first valid instant after the gap;
    - a wall time inside a DST overlap (fall back) exists twice, only its first
      occurrence fires.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from .domain.schedule import CronSchedule, IntervalSchedule, OneTimeSchedule
from .errors import ScheduleValidationError

logger = logging.getLogger(__name__)

UTC = ZoneInfo("UTC")

# A full Gregorian weekday/leap-year cycle as far as cron fields can tell.
_VALIDATION_YEARS = range(2000, 2028)
_MAX_CANDIDATES = 10_000
_MICROSECOND = timedelta(microseconds=1)

Schedule = Union[CronSchedule, IntervalSchedule, OneTimeSchedule]


def next_fire_time(schedule: Schedule, from_utc: datetime, strict: bool = False) -> Optional[datetime]:
    """
    Return the next fire time of ``schedule`` relative to ``from_utc``.

    Args:
        schedule: The schedule to evaluate.
        from_utc: Anchor instant (timezone-aware).
        strict: Only meaningful for interval schedules, whose next fire time
            is inclusive by default (a boundary instant is its own next fire).
            With ``strict=True`` the result is always later than ``from_utc``.

    Returns:
        The next fire time in UTC, or None when the schedule is exhausted.
    """
    from_utc = _as_utc(from_utc)
    if isinstance(schedule, IntervalSchedule):
        return _next_interval(schedule, from_utc, strict)
    if isinstance(schedule, CronSchedule):
        return _next_cron(schedule, from_utc)
    if isinstance(schedule, OneTimeSchedule):
        return schedule.fire_at if schedule.fire_at > from_utc else None
    raise ScheduleValidationError(f"Unsupported schedule type: {type(schedule).__name__}")


def is_misfire(fire_time: datetime, now: datetime, polling_interval: timedelta) -> bool:
    """
    A fire time is a misfire when it was missed by more than one polling
    interval, i.e. the scheduler was not running when it came due.
    """
    return _as_utc(now) - _as_utc(fire_time) > polling_interval


def validate_schedule(schedule: Schedule) -> None:
    """
    Reject schedules that can never be evaluated correctly.

    Raises:
        ScheduleValidationError: If the cron expression does not parse, does not
            fire at least once in every calendar year, or uses an unknown
            timezone; or if an interval period is not positive.
    """
    if isinstance(schedule, IntervalSchedule):
        if schedule.period <= timedelta(0):
            raise ScheduleValidationError(f"Interval period must be positive, got {schedule.period}")
    elif isinstance(schedule, CronSchedule):
        _zone(schedule.timezone)
        _validate_cron(schedule.expression)
    elif not isinstance(schedule, OneTimeSchedule):
        raise ScheduleValidationError(f"Unsupported schedule type: {type(schedule).__name__}")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError(f"Datetime {value} must be timezone-aware")
    return value.astimezone(UTC)


def _next_interval(schedule: IntervalSchedule, from_utc: datetime, strict: bool) -> datetime:
    anchor = schedule.anchor
    if from_utc < anchor or (from_utc == anchor and not strict):
        return anchor

    elapsed = (from_utc - anchor) // _MICROSECOND
    period = schedule.period // _MICROSECOND
    if strict:
        periods = elapsed // period + 1
    else:
        periods = -(-elapsed // period)
    return anchor + periods * schedule.period


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ScheduleValidationError(f"Unknown timezone '{name}'") from e


def _validate_cron(expression: str) -> None:
    for year in _VALIDATION_YEARS:
        start = datetime(year, 1, 1) - _MICROSECOND
        try:
            first = croniter(expression, start, second_at_beginning=True).get_next(datetime)
        except (ValueError, KeyError, TypeError) as e:
            raise ScheduleValidationError(f"Invalid cron expression '{expression}': {e}") from e
        if first.year != year:
            raise ScheduleValidationError(
                f"Cron expression '{expression}' does not fire in every calendar year (none in {year})"
            )


def _next_cron(schedule: CronSchedule, from_utc: datetime) -> datetime:
    tz = _zone(schedule.timezone)
    wall = from_utc.astimezone(tz).replace(tzinfo=None)
    candidates = croniter(schedule.expression, wall, second_at_beginning=True)

    for _ in range(_MAX_CANDIDATES):
        candidate = candidates.get_next(datetime)
        fire_time = _resolve_wall_time(candidate, tz)
        if fire_time > from_utc:
            return fire_time
    raise ScheduleValidationError(f"Cron expression '{schedule.expression}' produced no fire time after {from_utc}")


def _resolve_wall_time(wall: datetime, tz: ZoneInfo) -> datetime:
    """
    Map a naive local wall time to a UTC instant, honouring DST rules.
    """
    first = wall.replace(tzinfo=tz, fold=0).astimezone(UTC)
    if first.astimezone(tz).replace(tzinfo=None) == wall:
        # Exists; fold=0 is the first occurrence when the hour repeats.
        return first

    # The wall time falls into a gap. fold=1 interprets it with the offset in
    # effect after the transition, which lands before the gap ends in UTC.
    after = wall.replace(tzinfo=tz, fold=1).astimezone(UTC)
    low, high = min(first, after), max(first, after)
    offset_after = high.astimezone(tz).utcoffset()
    # Binary search the transition instant, i.e. the first instant whose offset
    # is the post-transition one.
    while high - low > timedelta(seconds=1):
        mid = low + (high - low) / 2
        if mid.astimezone(tz).utcoffset() == offset_after:
            high = mid
        else:
            low = mid
    logger.debug("Wall time %s does not exist in %s, shifted to %s", wall, tz.key, high)
    return high.replace(microsecond=0)
