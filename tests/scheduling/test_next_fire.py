"""Tests for next-fire computation."""

import random
from datetime import datetime, timezone

import pytest

from conftest import START_MS
from scriptflow.scheduling.next_fire import compute_next_execution, next_cron_time, resolve_timezone
from scriptflow.schemas import (
    ConditionalTrigger,
    CronTrigger,
    EventTrigger,
    IntervalTrigger,
    OnceTrigger,
    Schedule,
    ScheduleCondition,
    ScheduleStatus,
)

HOUR = 3600 * 1000


def _schedule(trigger, tz="UTC"):
    return Schedule(id="s", script_id="hello", name="s", trigger=trigger, timezone=tz)


def _ms(*args, tz=timezone.utc):
    return int(datetime(*args, tzinfo=tz).timestamp() * 1000)


class TestOnce:
    def test_future(self):
        assert compute_next_execution(_schedule(OnceTrigger(START_MS + 5000)), START_MS) == (START_MS + 5000, None)

    def test_past_has_no_next(self):
        assert compute_next_execution(_schedule(OnceTrigger(START_MS - 1)), START_MS) == (None, None)


class TestInterval:
    def test_from_now(self):
        next_at, status = compute_next_execution(_schedule(IntervalTrigger(60_000)), START_MS)
        assert next_at == START_MS + 60_000
        assert status is None

    def test_future_start(self):
        trigger = IntervalTrigger(60_000, start_at=START_MS + HOUR)
        assert compute_next_execution(_schedule(trigger), START_MS)[0] == START_MS + HOUR + 60_000

    def test_jitter_within_bounds(self):
        trigger = IntervalTrigger(60_000, jitter_ms=500)
        rng = random.Random(7)
        for _ in range(20):
            next_at, _ = compute_next_execution(_schedule(trigger), START_MS, rng)
            assert START_MS + 60_000 <= next_at <= START_MS + 60_500

    def test_expires_past_end(self):
        trigger = IntervalTrigger(60_000, end_at=START_MS + 30_000)
        assert compute_next_execution(_schedule(trigger), START_MS) == (None, ScheduleStatus.EXPIRED)


class TestCron:
    def test_every_five_minutes(self):
        # START_MS is midnight UTC
        assert next_cron_time("*/5 * * * *", START_MS) == START_MS + 5 * 60 * 1000

    def test_strictly_after(self):
        at_fire = START_MS + 5 * 60 * 1000
        assert next_cron_time("*/5 * * * *", at_fire) == at_fire + 5 * 60 * 1000

    def test_evaluated_in_timezone(self):
        """09:00 in New York on 2026-01-01 is 14:00 UTC."""
        trigger = CronTrigger("0 9 * * *")
        next_at, _ = compute_next_execution(_schedule(trigger, "America/New_York"), START_MS)
        assert next_at == _ms(2026, 1, 1, 14, 0)

    def test_start_window(self):
        trigger = CronTrigger("0 * * * *", start_at=START_MS + 3 * HOUR)
        assert compute_next_execution(_schedule(trigger), START_MS)[0] == START_MS + 4 * HOUR

    def test_expires_past_end(self):
        trigger = CronTrigger("0 12 * * *", end_at=START_MS + HOUR)
        assert compute_next_execution(_schedule(trigger), START_MS) == (None, ScheduleStatus.EXPIRED)


class TestOtherModes:
    def test_conditional_polls(self):
        trigger = ConditionalTrigger((ScheduleCondition("url", "contains", "x"),), check_interval_ms=5000)
        assert compute_next_execution(_schedule(trigger), START_MS) == (START_MS + 5000, None)

    def test_event_has_no_timer(self):
        assert compute_next_execution(_schedule(EventTrigger(("ping",))), START_MS) == (None, None)

    def test_unknown_timezone_falls_back_to_utc(self):
        assert resolve_timezone("Mars/Olympus_Mons") is timezone.utc

    def test_unsupported_trigger(self):
        with pytest.raises(ValueError):
            compute_next_execution(_schedule(object()), START_MS)
