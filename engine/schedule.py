"""
Schedule descriptors.

A descriptor is either a crontab expression ("0 6 * * *"), a short interval
("30s", "15m", "2h"), or the sentinel "manual". Cron parsing is delegated to
APScheduler's CronTrigger.
"""

import re
from datetime import datetime, timezone, tzinfo
from typing import Optional, Tuple, Union
import logging

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.exceptions import ScheduleError
from models.base import MANUAL_SCHEDULE, RecurrenceType
from models.job import Job

logger = logging.getLogger(__name__)

_INTERVAL = re.compile(r"^(\d+)\s*([smh])$")
_TIME_OF_DAY = re.compile(r"^(\d{1,2}):(\d{2})$")
_INTERVAL_UNITS = {"s": "seconds", "m": "minutes", "h": "hours"}

Trigger = Union[CronTrigger, IntervalTrigger]


def is_manual(descriptor: Optional[str]) -> bool:
    return not descriptor or not descriptor.strip() or descriptor.strip().lower() == MANUAL_SCHEDULE


def build_trigger(descriptor: Optional[str], tz: Optional[tzinfo] = None) -> Optional[Trigger]:
    """
    Turn a descriptor into an APScheduler trigger.

    Args:
        descriptor: Cron expression, short interval or "manual"
        tz: Zone cron fields are evaluated in (scheduler default if None)

    Returns:
        None for manual schedules

    Raises:
        ScheduleError: Malformed descriptor
    """
    if is_manual(descriptor):
        return None

    descriptor = descriptor.strip()
    match = _INTERVAL.match(descriptor)
    if match:
        amount = int(match.group(1))
        if amount <= 0:
            raise ScheduleError(
                f"Interval must be positive: '{descriptor}'",
                context={"schedule": descriptor}
            )
        return IntervalTrigger(timezone=tz, **{_INTERVAL_UNITS[match.group(2)]: amount})

    try:
        return CronTrigger.from_crontab(descriptor, timezone=tz)
    except ValueError as e:
        raise ScheduleError(
            f"Invalid schedule '{descriptor}'",
            context={"schedule": descriptor},
            original_exception=e
        )


def is_valid(descriptor: Optional[str]) -> bool:
    try:
        build_trigger(descriptor)
    except ScheduleError:
        return False
    return True


def next_fire_time(
    descriptor: Optional[str],
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None
) -> Optional[datetime]:
    """Next fire time after ``now``; None for manual schedules"""
    trigger = build_trigger(descriptor, tz)
    if trigger is None:
        return None
    return trigger.get_next_fire_time(None, now or datetime.now(timezone.utc))


def _parse_time_of_day(value: Optional[str]) -> Optional[Tuple[int, int]]:
    if not value:
        return None
    match = _TIME_OF_DAY.match(value.strip())
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return hours, minutes


def _fallback_cron(job: Job, reason: str) -> str:
    """Use the job's own cron expression if valid, else treat the job as manual"""
    if not is_manual(job.schedule) and is_valid(job.schedule):
        logger.info(f"{reason} for job {job.name}, using provided schedule: {job.schedule}")
        return job.schedule
    logger.warning(f"{reason} for job {job.name} and no valid schedule, treating as manual")
    return MANUAL_SCHEDULE


def resolve_schedule(job: Job) -> str:
    """
    Effective descriptor of a job.

    Recurrence settings take precedence over ``schedule``:
    - daily: "M H * * *" from ``time_of_day``
    - every-n-days: "M H */N * *" from ``time_of_day`` and ``every_n_days``
    - once: manual
    - custom: ``schedule`` as-is
    Without a recurrence type a manual ``schedule`` stays manual; otherwise a
    ``time_of_day`` replaces ``schedule`` with a daily run at that time.
    """
    recurrence = job.recurrence_type
    time_of_day = _parse_time_of_day(job.time_of_day)

    if recurrence == RecurrenceType.ONCE:
        return MANUAL_SCHEDULE

    if recurrence == RecurrenceType.DAILY:
        if time_of_day:
            hours, minutes = time_of_day
            return f"{minutes} {hours} * * *"
        return _fallback_cron(job, "Daily recurrence without a valid time of day")

    if recurrence == RecurrenceType.EVERY_N_DAYS:
        if time_of_day and job.every_n_days:
            hours, minutes = time_of_day
            return f"{minutes} {hours} */{job.every_n_days} * *"
        return _fallback_cron(job, "Every-n-days recurrence with incomplete settings")

    if recurrence == RecurrenceType.CUSTOM or is_manual(job.schedule):
        return job.schedule or MANUAL_SCHEDULE

    if job.time_of_day:
        if time_of_day:
            hours, minutes = time_of_day
            return f"{minutes} {hours} * * *"
        logger.warning(f"Invalid time of day '{job.time_of_day}' for job {job.name}, treating as manual")
        return MANUAL_SCHEDULE

    return job.schedule
