# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Schedule lifecycle, next-fire computation and condition checks."""

from scriptflow.scheduling.conditions import ConditionEvaluator, ConditionFacts
from scriptflow.scheduling.errors import ErrorCode, SchedulingError
from scriptflow.scheduling.next_fire import compute_next_execution
from scriptflow.scheduling.scheduler import Scheduler
from scriptflow.scheduling.validation import (
    SUPPORTED_TIMEZONES,
    SchedulingLimits,
    validate_schedule,
)

__all__ = [
    "ConditionEvaluator",
    "ConditionFacts",
    "ErrorCode",
    "SchedulingError",
    "compute_next_execution",
    "Scheduler",
    "SUPPORTED_TIMEZONES",
    "SchedulingLimits",
    "validate_schedule",
]
