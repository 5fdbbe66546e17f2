# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Error classification and recovery policy.

Failures are categorized by matching their message against an
ordered list of (category, patterns) pairs; the first category with a hit wins.
"""

import logging
import re
import time
import traceback
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Pattern, Tuple

from scriptflow.schemas import ExecutionContext


CATEGORIES = (
    "validation",
    "security",
    "execution",
    "timeout",
    "permission",
    "network",
    "memory",
    "host_api",
    "unknown",
)


@dataclass(frozen=True)
class RecoveryPolicy:
    retryable: bool
    max_retries: int
    retry_delay_ms: int
    fallback: str  # disable_script | report | skip


DEFAULT_POLICIES: Dict[str, RecoveryPolicy] = {
    "validation": RecoveryPolicy(False, 0, 0, "disable_script"),
    "security": RecoveryPolicy(False, 0, 0, "disable_script"),
    "memory": RecoveryPolicy(False, 0, 0, "disable_script"),
    "execution": RecoveryPolicy(True, 3, 1000, "skip"),
    "timeout": RecoveryPolicy(True, 2, 2000, "skip"),
    "permission": RecoveryPolicy(False, 0, 0, "report"),
    "network": RecoveryPolicy(True, 3, 5000, "skip"),
    "host_api": RecoveryPolicy(True, 2, 1000, "skip"),
    "unknown": RecoveryPolicy(True, 1, 1000, "skip"),
}

SEVERITY = {
    "security": "critical",
    "memory": "critical",
    "validation": "high",
    "permission": "high",
    "execution": "medium",
    "timeout": "medium",
    "unknown": "medium",
    "network": "low",
    "host_api": "low",
}

LOG_LEVELS = {
    "critical": logging.ERROR,
    "high": logging.WARNING,
    "medium": logging.INFO,
    "low": logging.DEBUG,
}

DEFAULT_CLASSIFIERS: List[Tuple[str, List[str]]] = [
    ("validation", [
        r"syntax\s*error",
        r"unexpected token",
        r"validation (?:failed|error)",
        r"invalid (?:script|pattern|metadata)",
    ]),
    ("security", [
        r"content security policy",
        r"\bcsp\b",
        r"unsafe-eval",
        r"unsafe-inline",
        r"security\s*error",
        r"blocked by",
    ]),
    ("execution", [
        r"reference\s*error",
        r"type\s*error",
        r"range\s*error",
        r"is not defined",
        r"is not a function",
        r"cannot read propert",
        r"undefined is not",
    ]),
    ("timeout", [
        r"timed? ?out",
        r"timeout",
        r"deadline exceeded",
    ]),
    ("permission", [
        r"permission denied",
        r"not allowed",
        r"access denied",
        r"unauthori[sz]ed",
        r"forbidden",
    ]),
    ("network", [
        r"network\s*error",
        r"failed to fetch",
        r"connection (?:refused|reset|closed)",
        r"\bcors\b",
        r"\bdns\b",
        r"err_internet_disconnected",
    ]),
    ("memory", [
        r"out of memory",
        r"heap (?:limit|out)",
        r"allocation failed",
        r"maximum call stack",
        r"memory limit",
    ]),
    ("host_api", [
        r"chrome\.",
        r"extension error",
        r"host api error",
        r"scripting error",
        r"cannot access contents of",
        r"no tab with id",
    ]),
]


@dataclass(frozen=True)
class ScriptError:
    """A classified failure. Never mutated after creation."""

    id: str
    category: str
    severity: str
    message: str
    retryable: bool
    timestamp: int
    script_id: Optional[str] = None
    tab_id: Optional[int] = None
    retry_count: int = 0
    max_retries: int = 3
    stack: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "severity": self.severity,
            "message": self.message,
            "retryable": self.retryable,
            "timestamp": self.timestamp,
            "script_id": self.script_id,
            "tab_id": self.tab_id,
            "retry_count": self.retry_count,
            "context": dict(self.context),
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


def _describe(error: Any) -> Tuple[str, Optional[str]]:
    if isinstance(error, BaseException):
        message = str(error) or type(error).__name__
        stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        return f"{type(error).__name__}: {message}", stack
    return str(error), None


class ErrorClassifier:
    """Classifies execution failures and decides how to recover."""

    def __init__(
        self,
        max_errors: int = 10000,
        retention_ms: int = 24 * 3600 * 1000,
        policies: Optional[Dict[str, RecoveryPolicy]] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.max_errors = max_errors
        self.retention_ms = retention_ms
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._policies = dict(DEFAULT_POLICIES)
        if policies:
            self._policies.update(policies)
        self._classifiers: List[Tuple[str, List[Pattern[str]]]] = []
        for category, patterns in DEFAULT_CLASSIFIERS:
            self.register(category, patterns)
        self._errors: Deque[ScriptError] = deque(maxlen=max_errors)

    def register(self, category: str, patterns: Iterable[str]) -> None:
        """Append classification patterns for a category (order preserved)."""
        if category not in CATEGORIES:
            raise ValueError(f"Unknown error category: {category}")
        compiled = [re.compile(p, re.IGNORECASE) for p in patterns]
        for existing_category, existing in self._classifiers:
            if existing_category == category:
                existing.extend(compiled)
                return
        self._classifiers.append((category, compiled))

    def classify(self, error: Any) -> str:
        # Only the message is matched; local tracebacks carry our own source lines.
        message, _ = _describe(error)
        for category, patterns in self._classifiers:
            if any(p.search(message) for p in patterns):
                return category
        return "unknown"

    def policy_for(self, category: str) -> RecoveryPolicy:
        return self._policies.get(category, self._policies["unknown"])

    def handle(
        self,
        error: Any,
        context: Optional[ExecutionContext] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> ScriptError:
        """
        Classify an error, record it and log it at its severity.

        Args:
            error: Exception or message.
            context: Context of the failing attempt, if any.
            extra: Additional fields merged into the context snapshot. Without a
                context, its script_id and tab_id attribute the error.

        Returns:
            The recorded ScriptError.
        """
        message, stack = _describe(error)
        category = self.classify(error)
        severity = SEVERITY.get(category, "medium")
        snapshot = context.snapshot() if context is not None else {}
        if extra:
            snapshot.update(extra)

        script_error = ScriptError(
            id=f"err_{uuid.uuid4().hex[:12]}",
            category=category,
            severity=severity,
            message=message,
            retryable=self.policy_for(category).retryable,
            timestamp=self.clock(),
            script_id=context.script_id if context else snapshot.get("script_id"),
            tab_id=context.tab_id if context else snapshot.get("tab_id"),
            retry_count=context.retry_count if context else 0,
            max_retries=context.max_retries if context else 0,
            stack=stack,
            context=snapshot,
        )
        self._errors.append(script_error)

        where = (
            f"script {script_error.script_id} tab {script_error.tab_id}"
            if script_error.script_id is not None
            else "no context"
        )
        self.logger.log(
            LOG_LEVELS[severity],
            f"[{category}/{severity}] {message} ({where})",
        )
        return script_error

    def should_retry(self, script_error: ScriptError) -> bool:
        policy = self.policy_for(script_error.category)
        return (
            policy.retryable
            and script_error.retry_count < policy.max_retries
            and script_error.retry_count < script_error.max_retries
        )

    def retry_delay(self, script_error: ScriptError) -> int:
        return self.policy_for(script_error.category).retry_delay_ms

    def errors_for_script(self, script_id: str) -> List[ScriptError]:
        return [e for e in self._errors if e.script_id == script_id]

    def errors_for_tab(self, tab_id: int) -> List[ScriptError]:
        return [e for e in self._errors if e.tab_id == tab_id]

    def statistics(self) -> Dict[str, Any]:
        by_category: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        for e in self._errors:
            by_category[e.category] = by_category.get(e.category, 0) + 1
            by_severity[e.severity] = by_severity.get(e.severity, 0) + 1
        hour_ago = self.clock() - 3600 * 1000
        return {
            "total_errors": len(self._errors),
            "by_category": by_category,
            "by_severity": by_severity,
            "recent_errors": sum(1 for e in self._errors if e.timestamp >= hour_ago),
        }

    def clear_old_errors(self) -> int:
        cutoff = self.clock() - self.retention_ms
        kept = [e for e in self._errors if e.timestamp >= cutoff]
        removed = len(self._errors) - len(kept)
        self._errors = deque(kept, maxlen=self.max_errors)
        if removed:
            self.logger.info(f"Cleared {removed} old errors")
        return removed
