# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Schedule schemas.

A Schedule owns exactly one trigger config; the mode is derived from the
trigger's type, so a schedule cannot carry two modes at once.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class ScheduleMode(Enum):
    ONCE = "once"
    INTERVAL = "interval"
    CRON = "cron"
    CONDITIONAL = "conditional"
    EVENT = "event"


class ScheduleStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


CONDITION_OPERATORS = (
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "starts_with",
    "ends_with",
    "regex",
    "greater_than",
    "less_than",
    "greater_than_or_equal",
    "less_than_or_equal",
    "is_empty",
    "is_not_empty",
    "is_true",
    "is_false",
)

CONDITION_SOURCES = (
    "url",
    "title",
    "domain",
    "time",
    "day_of_week",
    "day_of_month",
    "month",
    "year",
    "local_storage",
    "session_storage",
    "cookie",
    "custom",
)

TRIGGER_SOURCES = ("user", "system", "api")


@dataclass(frozen=True)
class ScheduleTrigger:
    """What caused a scheduled execution."""

    mode: ScheduleMode
    source: str  # user | system | api
    timestamp: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "source": self.source,
            "timestamp": self.timestamp,
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class ScheduleCondition:
    """A single predicate checked by conditional schedules.

    `key` names the storage entry / cookie / custom fact for sources that
    need one (local_storage, session_storage, cookie, custom).
    """

    source: str
    operator: str
    value: Union[str, int, float, bool, None] = None
    case_sensitive: bool = False
    key: Optional[str] = None
    id: Optional[str] = None


@dataclass(frozen=True)
class OnceTrigger:
    execute_at: int  # epoch ms

    mode = ScheduleMode.ONCE


@dataclass(frozen=True)
class IntervalTrigger:
    interval_ms: int
    jitter_ms: int = 0
    start_at: Optional[int] = None
    end_at: Optional[int] = None

    mode = ScheduleMode.INTERVAL


@dataclass(frozen=True)
class CronTrigger:
    expression: str
    start_at: Optional[int] = None
    end_at: Optional[int] = None

    mode = ScheduleMode.CRON


@dataclass(frozen=True)
class ConditionalTrigger:
    conditions: Tuple[ScheduleCondition, ...]
    check_interval_ms: int = 60000
    cooldown_ms: int = 0

    mode = ScheduleMode.CONDITIONAL


@dataclass(frozen=True)
class EventTrigger:
    events: Tuple[str, ...]
    target_urls: Tuple[str, ...] = ()
    cooldown_ms: int = 0

    mode = ScheduleMode.EVENT


Trigger = Union[OnceTrigger, IntervalTrigger, CronTrigger, ConditionalTrigger, EventTrigger]

_TRIGGER_TYPES = {
    ScheduleMode.ONCE: OnceTrigger,
    ScheduleMode.INTERVAL: IntervalTrigger,
    ScheduleMode.CRON: CronTrigger,
    ScheduleMode.CONDITIONAL: ConditionalTrigger,
    ScheduleMode.EVENT: EventTrigger,
}


@dataclass(frozen=True)
class RetryPolicy:
    """Per-schedule retry settings handed to the executor."""

    max_retries: int = 3
    retry_delay_ms: int = 5000
    timeout_ms: int = 30000


@dataclass
class Schedule:
    """A schedule and its bookkeeping."""

    id: str
    script_id: str
    name: str
    trigger: Trigger
    description: str = ""
    enabled: bool = True
    priority: int = 0
    timezone: str = "UTC"
    tags: Tuple[str, ...] = ()
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    status: ScheduleStatus = ScheduleStatus.ACTIVE
    next_execution: Optional[int] = None
    last_execution: Optional[int] = None
    execution_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    @property
    def mode(self) -> ScheduleMode:
        return self.trigger.mode

    def copy(self, **changes) -> "Schedule":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "script_id": self.script_id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "priority": self.priority,
            "timezone": self.timezone,
            "tags": list(self.tags),
            "mode": self.mode.value,
            "trigger": trigger_to_dict(self.trigger),
            "retry": asdict(self.retry),
            "status": self.status.value,
            "next_execution": self.next_execution,
            "last_execution": self.last_execution,
            "execution_count": self.execution_count,
            "failure_count": self.failure_count,
            "consecutive_failures": self.consecutive_failures,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Schedule":
        """Rebuild a schedule from its stored or requested dict form.

        Raises:
            ValueError: If the mode or trigger config is malformed.
        """
        mode = ScheduleMode(data.get("mode") or data.get("trigger", {}).get("mode"))
        retry_data = data.get("retry") or {}
        return cls(
            id=data.get("id", ""),
            script_id=data.get("script_id", ""),
            name=data.get("name", ""),
            trigger=trigger_from_dict(mode, data.get("trigger") or {}),
            description=data.get("description", "") or "",
            enabled=bool(data.get("enabled", True)),
            priority=int(data.get("priority", 0)),
            timezone=data.get("timezone") or "UTC",
            tags=tuple(data.get("tags") or ()),
            retry=RetryPolicy(
                max_retries=int(retry_data.get("max_retries", 3)),
                retry_delay_ms=int(retry_data.get("retry_delay_ms", 5000)),
                timeout_ms=int(retry_data.get("timeout_ms", 30000)),
            ),
            status=ScheduleStatus(data.get("status", "active")),
            next_execution=data.get("next_execution"),
            last_execution=data.get("last_execution"),
            execution_count=int(data.get("execution_count", 0)),
            failure_count=int(data.get("failure_count", 0)),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


def trigger_to_dict(trigger: Trigger) -> Dict[str, Any]:
    data = asdict(trigger)
    if isinstance(trigger, ConditionalTrigger):
        data["conditions"] = [asdict(c) for c in trigger.conditions]
    elif isinstance(trigger, EventTrigger):
        data["events"] = list(trigger.events)
        data["target_urls"] = list(trigger.target_urls)
    return data


_TIMESTAMP_FIELDS = ("execute_at", "start_at", "end_at")
_DURATION_FIELDS = ("interval_ms", "jitter_ms", "check_interval_ms", "cooldown_ms")


def _to_ms(name: str, value: Any) -> Optional[int]:
    """Epoch or duration milliseconds from an int, an integral float or (timestamps only) a datetime.

    Naive datetimes, as PyYAML loads them, are taken as UTC.
    """
    if value is None:
        return None
    if name in _TIMESTAMP_FIELDS and isinstance(value, date):
        if not isinstance(value, datetime):
            value = datetime(value.year, value.month, value.day)
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number of milliseconds, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise ValueError(f"{name} must be a number of milliseconds, got {value!r}")


def trigger_from_dict(mode: ScheduleMode, data: Dict[str, Any]) -> Trigger:
    """Build the trigger for ``mode``.

    Raises:
        ValueError: If a field is missing, unknown to the constructor or of the wrong type.
    """
    if not isinstance(data, dict):
        raise ValueError(f"{mode.value} trigger must be a mapping")
    trigger_cls = _TRIGGER_TYPES[mode]
    allowed = {f.name for f in fields(trigger_cls)}
    kwargs = {k: v for k, v in data.items() if k in allowed}
    for name in _TIMESTAMP_FIELDS + _DURATION_FIELDS:
        if name not in kwargs:
            continue
        if kwargs[name] is None and name in _DURATION_FIELDS[1:]:
            del kwargs[name]
        else:
            kwargs[name] = _to_ms(name, kwargs[name])
    if "expression" in kwargs and not isinstance(kwargs["expression"], str):
        raise ValueError(f"expression must be a string, got {kwargs['expression']!r}")
    try:
        if trigger_cls is ConditionalTrigger:
            kwargs["conditions"] = tuple(
                c if isinstance(c, ScheduleCondition) else ScheduleCondition(**c)
                for c in kwargs.get("conditions") or ()
            )
        elif trigger_cls is EventTrigger:
            kwargs["events"] = tuple(kwargs.get("events") or ())
            kwargs["target_urls"] = tuple(kwargs.get("target_urls") or ())
        return trigger_cls(**kwargs)
    except TypeError as e:
        raise ValueError(f"invalid {mode.value} trigger: {e}")


@dataclass(frozen=True)
class ScheduleRun:
    """One scheduled execution, as kept in the per-schedule history."""

    execution_id: str
    schedule_id: str
    script_id: str
    success: bool
    start_time: int
    end_time: int
    trigger: ScheduleTrigger
    error: Optional[str] = None
    error_code: Optional[str] = None
    retry_count: int = 0

    @property
    def duration(self) -> int:
        return self.end_time - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "schedule_id": self.schedule_id,
            "script_id": self.script_id,
            "success": self.success,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": self.duration,
            "trigger": self.trigger.to_dict(),
            "error": self.error,
            "error_code": self.error_code,
            "retry_count": self.retry_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleRun":
        trigger = data.get("trigger") or {}
        return cls(
            execution_id=data["execution_id"],
            schedule_id=data["schedule_id"],
            script_id=data["script_id"],
            success=bool(data["success"]),
            start_time=int(data["start_time"]),
            end_time=int(data["end_time"]),
            trigger=ScheduleTrigger(
                mode=ScheduleMode(trigger.get("mode", "once")),
                source=trigger.get("source", "system"),
                timestamp=int(trigger.get("timestamp", data["start_time"])),
                metadata=trigger.get("metadata") or {},
            ),
            error=data.get("error"),
            error_code=data.get("error_code"),
            retry_count=int(data.get("retry_count", 0)),
        )


@dataclass
class FieldIssue:
    """A validation error or warning tied to one config field."""

    field: str
    code: str
    message: str
    value: Any = None


@dataclass
class ValidationReport:
    errors: List[FieldIssue] = field(default_factory=list)
    warnings: List[FieldIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [asdict(e) for e in self.errors],
            "warnings": [asdict(w) for w in self.warnings],
        }
