# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Scheduling error codes."""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    INVALID_SCHEDULE_CONFIG = "INVALID_SCHEDULE_CONFIG"
    INVALID_CRON_EXPRESSION = "INVALID_CRON_EXPRESSION"
    INVALID_CONDITION = "INVALID_CONDITION"
    SCHEDULE_NOT_FOUND = "SCHEDULE_NOT_FOUND"
    SCHEDULE_EXISTS = "SCHEDULE_EXISTS"
    INVALID_STATE = "INVALID_STATE"
    SCRIPT_NOT_FOUND = "SCRIPT_NOT_FOUND"
    SCRIPT_DISABLED = "SCRIPT_DISABLED"
    NO_TARGET_TAB = "NO_TARGET_TAB"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    EXECUTION_BLOCKED = "EXECUTION_BLOCKED"
    SCHEDULER_NOT_STARTED = "SCHEDULER_NOT_STARTED"
    ALARM_CREATION_FAILED = "ALARM_CREATION_FAILED"
    STORAGE_ERROR = "STORAGE_ERROR"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    SYSTEM_ERROR = "SYSTEM_ERROR"


class SchedulingError(Exception):
    """Raised when a scheduling operation is rejected or cannot complete."""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.SYSTEM_ERROR,
        context: Optional[Dict[str, Any]] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.context = context or {}
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "context": self.context,
            "retryable": self.retryable,
        }
