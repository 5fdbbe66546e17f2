# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Schedule config validation.

Every check runs; the report lists all errors and warnings rather than
stopping at the first one.
"""

import re
from dataclasses import dataclass
from typing import List, Optional

from croniter import croniter

from scriptflow.engine.url_matcher import contains_redos_shape
from scriptflow.schemas import (
    ConditionalTrigger,
    CronTrigger,
    EventTrigger,
    FieldIssue,
    IntervalTrigger,
    OnceTrigger,
    Schedule,
    ScheduleCondition,
    ValidationReport,
)
from scriptflow.schemas.schedule import CONDITION_OPERATORS, CONDITION_SOURCES


SUPPORTED_TIMEZONES = (
    "UTC",
    "America/New_York",
    "America/Chicago",
    "America/Denver",
    "America/Los_Angeles",
    "Europe/London",
    "Europe/Paris",
    "Europe/Berlin",
    "Asia/Tokyo",
    "Asia/Shanghai",
    "Australia/Sydney",
)

KEYED_SOURCES = ("local_storage", "session_storage", "cookie", "custom")
VALUELESS_OPERATORS = ("is_empty", "is_not_empty", "is_true", "is_false")
NUMERIC_OPERATORS = ("greater_than", "less_than", "greater_than_or_equal", "less_than_or_equal")
TIME_OF_DAY = re.compile(r"^\d{1,2}:\d{2}$")


@dataclass(frozen=True)
class SchedulingLimits:
    max_schedules: int = 1000
    max_name_length: int = 100
    max_description_length: int = 500
    max_tags: int = 20
    max_conditions: int = 10
    max_history: int = 100
    min_interval_ms: int = 1000
    max_interval_ms: int = 86_400_000
    min_check_interval_ms: int = 1000
    max_timeout_ms: int = 300_000
    max_retries: int = 10
    max_consecutive_failures: int = 5
    timer_tolerance_ms: int = 1000


def is_valid_cron(expression: str) -> bool:
    if not isinstance(expression, str):
        return False
    parts = expression.split()
    if not 5 <= len(parts) <= 6:
        return False
    return bool(croniter.is_valid(expression))


def _is_number(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        if TIME_OF_DAY.match(value.strip()):
            return True
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def condition_issues(condition: ScheduleCondition, index: int) -> List[FieldIssue]:
    """Check one condition's source, operator and value."""
    field = f"trigger.conditions[{index}]"
    issues: List[FieldIssue] = []

    if condition.source not in CONDITION_SOURCES:
        issues.append(FieldIssue(f"{field}.source", "INVALID_CONDITION",
                                 f"Unknown condition source: {condition.source}", condition.source))
    if condition.operator not in CONDITION_OPERATORS:
        issues.append(FieldIssue(f"{field}.operator", "INVALID_CONDITION",
                                 f"Unknown condition operator: {condition.operator}", condition.operator))
    if condition.source in KEYED_SOURCES and not condition.key:
        issues.append(FieldIssue(f"{field}.key", "INVALID_CONDITION",
                                 f"Condition source {condition.source} requires a key"))

    if condition.operator in VALUELESS_OPERATORS:
        return issues

    if condition.value is None or condition.value == "":
        issues.append(FieldIssue(f"{field}.value", "INVALID_CONDITION",
                                 f"Operator {condition.operator} requires a value"))
    elif condition.operator in NUMERIC_OPERATORS and not _is_number(condition.value):
        issues.append(FieldIssue(f"{field}.value", "INVALID_CONDITION",
                                 f"Operator {condition.operator} requires a numeric value",
                                 condition.value))
    elif condition.operator == "regex":
        pattern = str(condition.value)
        if contains_redos_shape(pattern):
            issues.append(FieldIssue(f"{field}.value", "INVALID_CONDITION",
                                     "Regex contains a nested quantifier", pattern))
        else:
            try:
                re.compile(pattern)
            except re.error as e:
                issues.append(FieldIssue(f"{field}.value", "INVALID_CONDITION",
                                         f"Invalid regex: {e}", pattern))
    return issues


def validate_schedule(
    schedule: Schedule,
    now: int,
    limits: Optional[SchedulingLimits] = None,
    script_exists: bool = True,
    schedule_count: int = 0,
    is_new: bool = True,
) -> ValidationReport:
    """
    Validate a schedule config.

    Args:
        schedule: Candidate schedule (not yet stored).
        now: Current time in epoch ms.
        limits: Scheduling limits; defaults apply when omitted.
        script_exists: Whether the owning script is registered.
        schedule_count: Number of schedules already stored.
        is_new: Apply the creation-only quota check.

    Returns:
        ValidationReport listing every error and warning found.
    """
    limits = limits or SchedulingLimits()
    report = ValidationReport()
    errors = report.errors

    if not schedule.script_id:
        errors.append(FieldIssue("script_id", "REQUIRED_FIELD_MISSING", "Script ID is required"))
    elif not script_exists:
        errors.append(FieldIssue("script_id", "SCRIPT_NOT_FOUND",
                                 f"Script not found: {schedule.script_id}", schedule.script_id))

    if not schedule.name or not schedule.name.strip():
        errors.append(FieldIssue("name", "REQUIRED_FIELD_MISSING", "Schedule name is required"))
    elif len(schedule.name) > limits.max_name_length:
        errors.append(FieldIssue("name", "INVALID_VALUE",
                                 f"Schedule name must be at most {limits.max_name_length} characters",
                                 schedule.name))

    if len(schedule.description or "") > limits.max_description_length:
        errors.append(FieldIssue("description", "INVALID_VALUE",
                                 f"Description must be at most {limits.max_description_length} characters"))

    if len(schedule.tags) > limits.max_tags:
        errors.append(FieldIssue("tags", "INVALID_VALUE",
                                 f"At most {limits.max_tags} tags are allowed", len(schedule.tags)))

    if is_new and schedule_count >= limits.max_schedules:
        errors.append(FieldIssue("id", "QUOTA_EXCEEDED",
                                 f"Schedule limit reached ({limits.max_schedules})", schedule_count))

    _validate_trigger(schedule, now, limits, report)

    retry = schedule.retry
    if retry.max_retries < 0 or retry.max_retries > limits.max_retries:
        errors.append(FieldIssue("retry.max_retries", "INVALID_VALUE",
                                 f"Max retries must be between 0 and {limits.max_retries}",
                                 retry.max_retries))
    if retry.timeout_ms <= 0 or retry.timeout_ms > limits.max_timeout_ms:
        errors.append(FieldIssue("retry.timeout_ms", "INVALID_VALUE",
                                 f"Timeout must be between 1 and {limits.max_timeout_ms}ms",
                                 retry.timeout_ms))
    if retry.retry_delay_ms < 0:
        errors.append(FieldIssue("retry.retry_delay_ms", "INVALID_VALUE",
                                 "Retry delay cannot be negative", retry.retry_delay_ms))

    if schedule.timezone not in SUPPORTED_TIMEZONES:
        report.warnings.append(FieldIssue("timezone", "UNSUPPORTED_TIMEZONE",
                                          "Timezone may not be fully supported", schedule.timezone))
    return report


def _check_window(start_at: Optional[int], end_at: Optional[int], errors: List[FieldIssue]) -> None:
    if start_at is not None and end_at is not None and end_at <= start_at:
        errors.append(FieldIssue("trigger.end_at", "INVALID_VALUE",
                                 "End time must be after start time", end_at))


def _validate_trigger(schedule: Schedule, now: int, limits: SchedulingLimits,
                      report: ValidationReport) -> None:
    trigger = schedule.trigger
    errors = report.errors

    if isinstance(trigger, OnceTrigger):
        if not trigger.execute_at or trigger.execute_at <= now:
            errors.append(FieldIssue("trigger.execute_at", "INVALID_VALUE",
                                     "Execute time must be in the future", trigger.execute_at))

    elif isinstance(trigger, IntervalTrigger):
        if not trigger.interval_ms or trigger.interval_ms < limits.min_interval_ms:
            errors.append(FieldIssue("trigger.interval_ms", "INVALID_VALUE",
                                     f"Interval must be at least {limits.min_interval_ms}ms",
                                     trigger.interval_ms))
        elif trigger.interval_ms > limits.max_interval_ms:
            errors.append(FieldIssue("trigger.interval_ms", "INVALID_VALUE",
                                     f"Interval must be at most {limits.max_interval_ms}ms",
                                     trigger.interval_ms))
        if trigger.jitter_ms < 0:
            errors.append(FieldIssue("trigger.jitter_ms", "INVALID_VALUE",
                                     "Jitter cannot be negative", trigger.jitter_ms))
        _check_window(trigger.start_at, trigger.end_at, errors)

    elif isinstance(trigger, CronTrigger):
        if not trigger.expression:
            errors.append(FieldIssue("trigger.expression", "REQUIRED_FIELD_MISSING",
                                     "Cron expression is required"))
        elif not is_valid_cron(trigger.expression):
            errors.append(FieldIssue("trigger.expression", "INVALID_CRON_EXPRESSION",
                                     "Invalid cron expression", trigger.expression))
        _check_window(trigger.start_at, trigger.end_at, errors)

    elif isinstance(trigger, ConditionalTrigger):
        if not trigger.conditions:
            errors.append(FieldIssue("trigger.conditions", "INVALID_CONDITION",
                                     "At least one condition is required"))
        elif len(trigger.conditions) > limits.max_conditions:
            errors.append(FieldIssue("trigger.conditions", "INVALID_CONDITION",
                                     f"At most {limits.max_conditions} conditions are allowed",
                                     len(trigger.conditions)))
        else:
            for index, condition in enumerate(trigger.conditions):
                errors.extend(condition_issues(condition, index))
        if trigger.check_interval_ms < limits.min_check_interval_ms:
            errors.append(FieldIssue("trigger.check_interval_ms", "INVALID_VALUE",
                                     f"Check interval must be at least {limits.min_check_interval_ms}ms",
                                     trigger.check_interval_ms))
        if trigger.cooldown_ms < 0:
            errors.append(FieldIssue("trigger.cooldown_ms", "INVALID_VALUE",
                                     "Cooldown cannot be negative", trigger.cooldown_ms))

    elif isinstance(trigger, EventTrigger):
        if not trigger.events or not all(isinstance(e, str) and e.strip() for e in trigger.events):
            errors.append(FieldIssue("trigger.events", "REQUIRED_FIELD_MISSING",
                                     "At least one event name is required"))
        if trigger.cooldown_ms < 0:
            errors.append(FieldIssue("trigger.cooldown_ms", "INVALID_VALUE",
                                     "Cooldown cannot be negative", trigger.cooldown_ms))
