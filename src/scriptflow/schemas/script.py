# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Script and execution value objects.

Script (stored) → ExecutionContext (per attempt) → ExecutionResult (per request).
Contexts and results are frozen; retries copy the context with a new retry_count.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from scriptflow.schemas.schedule import ScheduleTrigger


RUN_AT_VALUES = ("document_start", "document_end", "document_idle")
WORLD_VALUES = ("main", "isolated")
TAB_STATUSES = ("loading", "complete", "error")


def _normalize_run_at(value: Optional[str]) -> str:
    """Accept both document-idle (userscript header) and document_idle spellings."""
    if not value:
        return "document_idle"
    return str(value).strip().lower().replace("-", "_")


@dataclass
class Script:
    """A registered userscript.

    Owned by the script repository; everything else refers to it by id.
    """

    id: str
    name: str
    code: str
    enabled: bool = True
    matches: List[str] = field(default_factory=list)
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=list)
    run_at: str = "document_idle"
    world: str = "isolated"
    description: str = ""
    namespace: str = ""
    version: str = "1.0.0"
    author: str = ""
    grants: List[str] = field(default_factory=list)
    requires: List[str] = field(default_factory=list)
    noframes: bool = False
    execution_count: int = 0
    last_executed: Optional[int] = None  # epoch ms
    created_at: Optional[int] = None
    updated_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Script":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            code=data.get("code", ""),
            enabled=bool(data.get("enabled", True)),
            matches=list(data.get("matches") or []),
            include=list(data.get("include") or []),
            exclude=list(data.get("exclude") or []),
            run_at=_normalize_run_at(data.get("run_at")),
            world=str(data.get("world") or "isolated").lower(),
            description=data.get("description", "") or "",
            namespace=data.get("namespace", "") or "",
            version=data.get("version", "1.0.0") or "1.0.0",
            author=data.get("author", "") or "",
            grants=list(data.get("grants") or []),
            requires=list(data.get("requires") or []),
            noframes=bool(data.get("noframes", False)),
            execution_count=int(data.get("execution_count", 0)),
            last_executed=data.get("last_executed"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


@dataclass(frozen=True)
class ExecutionContext:
    """Immutable per-attempt execution context."""

    script_id: str
    tab_id: int
    url: str
    timestamp: int  # epoch ms at creation
    run_at: str
    world: str
    execution_id: str
    retry_count: int = 0
    max_retries: int = 3
    schedule_id: Optional[str] = None
    trigger: Optional[ScheduleTrigger] = None

    def snapshot(self) -> Dict[str, Any]:
        """Plain-dict view used in error records and events."""
        data = {
            "script_id": self.script_id,
            "tab_id": self.tab_id,
            "url": self.url,
            "run_at": self.run_at,
            "world": self.world,
            "execution_id": self.execution_id,
            "retry_count": self.retry_count,
        }
        if self.schedule_id:
            data["schedule_id"] = self.schedule_id
        if self.trigger:
            data["trigger"] = self.trigger.to_dict()
        return data


@dataclass
class TabState:
    """Document lifecycle state of one tab."""

    tab_id: int
    url: str
    status: str  # loading | complete | error
    last_updated: int
    document_ready: bool = False
    title: str = ""
    scripts_executed: Set[str] = field(default_factory=set)
    execution_queue: List[ExecutionContext] = field(default_factory=list)


class ExecutionStatus(Enum):
    """Terminal state of a logical execution request."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"  # validation, matching, already executed, stale context
    BLOCKED = "blocked"  # performance governor denial
    QUEUED = "queued"  # tab not ready yet


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one logical execution request."""

    status: ExecutionStatus
    script_id: str
    tab_id: int
    execution_time: float  # ms, whole request
    retry_count: int = 0
    attempts: int = 0
    can_retry: bool = False
    error: Optional[str] = None
    error_category: Optional[str] = None
    execution_id: Optional[str] = None
    result: Any = None
    timestamp: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status is ExecutionStatus.SUCCEEDED

    @property
    def message(self) -> str:
        """Human-readable summary for UI and CLI output."""
        if self.success:
            suffix = f" after {self.retry_count} retries" if self.retry_count else ""
            return f"Script {self.script_id} executed in {self.execution_time:.0f}ms{suffix}"
        return self.error or f"Script {self.script_id} {self.status.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "success": self.success,
            "script_id": self.script_id,
            "tab_id": self.tab_id,
            "execution_id": self.execution_id,
            "execution_time": self.execution_time,
            "retry_count": self.retry_count,
            "attempts": self.attempts,
            "can_retry": self.can_retry,
            "error": self.error,
            "error_category": self.error_category,
            "message": self.message,
            "result": self.result,
            "timestamp": self.timestamp,
        }
