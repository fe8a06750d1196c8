from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import DEFAULT_SCHEDULE_TIMEZONE
from ..manager_contract import ScheduleConfig

logger = logging.getLogger("pjn_sync.manager.schedule")


@dataclass(frozen=True)
class ScheduleVerdict:
    within_schedule: bool
    bypassed: bool = False

    @property
    def allowed(self) -> bool:
        return self.within_schedule or self.bypassed


def parse_hhmm(value: str) -> int:
    """
    Minutes since midnight for an ``HH:MM`` string.
    """
    hours, _, minutes = str(value).strip().partition(":")
    h, m = int(hours), int(minutes or 0)
    if not (0 <= h <= 23 and 0 <= m <= 59):
        raise ValueError(f"Invalid HH:MM value: {value!r}")
    return h * 60 + m


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_SCHEDULE_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown schedule timezone %r; using %s.", name, DEFAULT_SCHEDULE_TIMEZONE)
        return ZoneInfo(DEFAULT_SCHEDULE_TIMEZONE)


def is_within_schedule(schedule: ScheduleConfig, now: datetime) -> bool:
    """
    True when ``now`` falls inside the configured working window.

    A disabled schedule always allows running. The end time is exclusive. A
    window whose end is earlier than its start wraps past midnight and the
    part after midnight belongs to the previous day's window. Equal start and
    end mean the whole day.
    """
    if not schedule.enabled:
        return True

    local = now.astimezone(_zone(schedule.timezone))
    minute = local.hour * 60 + local.minute
    start = parse_hhmm(schedule.working_hours_start)
    end = parse_hhmm(schedule.working_hours_end)
    days = set(schedule.working_days)

    if start == end:
        return local.isoweekday() in days
    if start < end:
        return local.isoweekday() in days and start <= minute < end
    if minute >= start:
        return local.isoweekday() in days
    if minute < end:
        return (local - timedelta(days=1)).isoweekday() in days
    return False


def evaluate_schedule(
    schedule: ScheduleConfig,
    now: datetime,
    *,
    priority_condition: bool = False,
) -> ScheduleVerdict:
    """
    Schedule verdict for a worker kind, honouring its priority bypass.
    """
    within = is_within_schedule(schedule, now)
    bypassed = not within and schedule.priority_bypass and priority_condition
    return ScheduleVerdict(within_schedule=within, bypassed=bypassed)


__all__ = ["ScheduleVerdict", "evaluate_schedule", "is_within_schedule", "parse_hhmm"]
