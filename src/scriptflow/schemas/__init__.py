# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""ScriptFlow schemas."""

from scriptflow.schemas.schedule import (
    ConditionalTrigger,
    CronTrigger,
    EventTrigger,
    FieldIssue,
    IntervalTrigger,
    OnceTrigger,
    RetryPolicy,
    Schedule,
    ScheduleCondition,
    ScheduleMode,
    ScheduleRun,
    ScheduleStatus,
    ScheduleTrigger,
    ValidationReport,
)
from scriptflow.schemas.script import (
    ExecutionContext,
    ExecutionResult,
    ExecutionStatus,
    Script,
    TabState,
)

__all__ = [
    "Script",
    "ExecutionContext",
    "ExecutionResult",
    "ExecutionStatus",
    "TabState",
    "Schedule",
    "ScheduleMode",
    "ScheduleStatus",
    "ScheduleTrigger",
    "ScheduleCondition",
    "ScheduleRun",
    "RetryPolicy",
    "OnceTrigger",
    "IntervalTrigger",
    "CronTrigger",
    "ConditionalTrigger",
    "EventTrigger",
    "FieldIssue",
    "ValidationReport",
]
