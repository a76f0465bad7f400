import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Dict, Optional, Tuple

import pytz

from journey_engine.models.common import as_utc
from journey_engine.models.journey import WEEKDAYS, StepDelay
from journey_engine.models.lead import BusinessDay

logger = logging.getLogger(__name__)


@dataclass
class ScheduledTime:
    at: datetime
    awaiting_signal: bool = False
    signal_event: Optional[str] = None


def parse_time_of_day(value: str) -> Tuple[int, int]:
    hours, minutes = value.split(":")
    return int(hours), int(minutes)


def resolve_timezone(name: Optional[str], default: str):
    try:
        return pytz.timezone(name or default)
    except pytz.UnknownTimeZoneError:
        logger.warning(f"[SCHEDULE] Unknown timezone {name!r}, falling back to {default}")
        return pytz.timezone(default)


def _local_at(tz, day, value: str) -> datetime:
    hours, minutes = parse_time_of_day(value)
    return tz.normalize(tz.localize(datetime.combine(day, time(hours, minutes))))


def _next_local_time(now: datetime, tz, time_of_day: str, weekdays=None) -> datetime:
    local_now = now.astimezone(tz)
    for offset in range(8):
        day = local_now.date() + timedelta(days=offset)
        if weekdays and WEEKDAYS[day.weekday()] not in weekdays:
            continue
        candidate = _local_at(tz, day, time_of_day)
        if candidate > local_now:
            return as_utc(candidate)
    raise ValueError(f"No upcoming {time_of_day} found for weekdays {weekdays}")


def compute_schedule(
    delay: StepDelay,
    now: datetime,
    enrollment_started_at: datetime,
    tz,
    default_hold_hours: float,
) -> ScheduledTime:
    """When a step should run, given its delay rule. Never earlier than `now`."""
    now = as_utc(now)
    if delay.delay_type == "immediate":
        return ScheduledTime(at=now)

    if delay.delay_type == "relative":
        anchor = now if delay.anchor == "previous" else as_utc(enrollment_started_at)
        return ScheduledTime(at=max(anchor + delay.duration, now))

    if delay.delay_type == "absolute":
        return ScheduledTime(at=max(as_utc(delay.at), now))

    if delay.delay_type == "conditional":
        hold = timedelta(hours=delay.timeout_hours or default_hold_hours)
        return ScheduledTime(at=now + hold, awaiting_signal=True, signal_event=delay.event)

    if delay.delay_type == "fixed_time":
        return ScheduledTime(at=_next_local_time(now, tz, delay.time_of_day))

    if delay.delay_type == "specific_days":
        return ScheduledTime(at=_next_local_time(now, tz, delay.time_of_day, delay.weekdays))

    raise ValueError(f"Unknown delay type: {delay.delay_type}")


def next_business_time(now: datetime, schedule: Dict[str, BusinessDay], tz) -> datetime:
    """
    `now` when the tenant is open, otherwise the start of the next open window.
    An empty schedule is always open.
    """
    now = as_utc(now)
    if not schedule:
        return now
    local_now = now.astimezone(tz)
    for offset in range(8):
        day = local_now.date() + timedelta(days=offset)
        hours = schedule.get(WEEKDAYS[day.weekday()])
        if hours is None or not hours.enabled:
            continue
        start = _local_at(tz, day, hours.start)
        end = _local_at(tz, day, hours.end)
        if start <= local_now < end:
            return now
        if start > local_now:
            return as_utc(start)
    logger.warning("[SCHEDULE] Business schedule has no open day; treating it as always open")
    return now
