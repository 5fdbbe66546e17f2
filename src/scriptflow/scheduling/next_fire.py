# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Next-fire computation for each trigger mode."""

import logging
import random
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from scriptflow.schemas import (
    ConditionalTrigger,
    CronTrigger,
    EventTrigger,
    IntervalTrigger,
    OnceTrigger,
    Schedule,
    ScheduleStatus,
)

logger = logging.getLogger(__name__)


def resolve_timezone(name: str):
    """ZoneInfo for the name, falling back to UTC for unknown zones."""
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {name!r}, using UTC")
        return timezone.utc


def next_cron_time(expression: str, after_ms: int, tz_name: str = "UTC") -> int:
    """First cron fire strictly after ``after_ms``, evaluated in the timezone."""
    tz = resolve_timezone(tz_name)
    base = datetime.fromtimestamp(after_ms / 1000, tz)
    fire = croniter(expression, base).get_next(datetime)
    return int(fire.timestamp() * 1000)


def compute_next_execution(
    schedule: Schedule,
    now: int,
    rng: Optional[random.Random] = None,
) -> Tuple[Optional[int], Optional[ScheduleStatus]]:
    """
    Compute the schedule's next fire time.

    Args:
        schedule: Schedule whose trigger drives the computation.
        now: Current time in epoch ms.
        rng: Random source for interval jitter.

    Returns:
        (next_execution, status_change). status_change is EXPIRED when the
        next fire would fall past the trigger's end time, else None.
    """
    trigger = schedule.trigger

    if isinstance(trigger, OnceTrigger):
        return (trigger.execute_at if trigger.execute_at > now else None), None

    if isinstance(trigger, IntervalTrigger):
        base = trigger.start_at if trigger.start_at and trigger.start_at > now else now
        jitter = (rng or random).randint(0, trigger.jitter_ms) if trigger.jitter_ms > 0 else 0
        next_at = base + trigger.interval_ms + jitter
        if trigger.end_at is not None and next_at > trigger.end_at:
            return None, ScheduleStatus.EXPIRED
        return next_at, None

    if isinstance(trigger, CronTrigger):
        after = trigger.start_at if trigger.start_at and trigger.start_at > now else now
        next_at = next_cron_time(trigger.expression, after, schedule.timezone)
        if trigger.end_at is not None and next_at > trigger.end_at:
            return None, ScheduleStatus.EXPIRED
        return next_at, None

    if isinstance(trigger, ConditionalTrigger):
        return now + trigger.check_interval_ms, None

    if isinstance(trigger, EventTrigger):
        return None, None

    raise ValueError(f"Unsupported trigger: {trigger!r}")
