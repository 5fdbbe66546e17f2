# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Performance governor - records execution metrics and enforces ceilings on
time, memory, per-tab concurrency and hourly volume.
"""

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

from scriptflow.schemas import ExecutionContext


@dataclass(frozen=True)
class PerformanceLimits:
    max_execution_time_ms: int = 30000
    max_memory_mb: float = 100.0
    max_concurrent_per_tab: int = 10
    max_executions_per_hour: int = 1000
    max_metrics: int = 10000
    max_warnings: int = 1000
    retention_ms: int = 24 * 3600 * 1000
    # Performance score = success_weight * success_rate + time_weight * time_score
    success_weight: float = 0.7
    time_weight: float = 0.3


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class MeasurementHandle:
    id: str
    script_id: str
    tab_id: int
    started: float  # perf_counter seconds


@dataclass(frozen=True)
class ExecutionMetric:
    script_id: str
    tab_id: int
    execution_id: str
    execution_time: float  # ms
    memory_mb: float
    success: bool
    timestamp: int
    error_type: Optional[str] = None


@dataclass(frozen=True)
class PerformanceWarning:
    type: str  # execution_time | memory | failure_rate
    severity: str  # low | medium | high | critical
    script_id: str
    message: str
    value: float
    threshold: float
    timestamp: int


ROLLING_WINDOW = 10
FAILURE_RATE_WINDOW = 5


def _now_ms() -> int:
    return int(time.time() * 1000)


def severity_for_ratio(ratio: float) -> str:
    if ratio >= 2.0:
        return "critical"
    if ratio >= 1.5:
        return "high"
    if ratio >= 1.2:
        return "medium"
    return "low"


class PerformanceGovernor:
    """Gates attempts on resource ceilings and keeps a rolling metric window."""

    def __init__(
        self,
        limits: Optional[PerformanceLimits] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.limits = limits or PerformanceLimits()
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._metrics: Deque[ExecutionMetric] = deque(maxlen=self.limits.max_metrics)
        self._warnings: Deque[PerformanceWarning] = deque(maxlen=self.limits.max_warnings)
        self._in_flight: Dict[int, int] = {}
        self._active: Dict[str, MeasurementHandle] = {}

    def _recent(self, script_id: str, count: int = ROLLING_WINDOW) -> List[ExecutionMetric]:
        found: List[ExecutionMetric] = []
        for metric in reversed(self._metrics):
            if metric.script_id == script_id:
                found.append(metric)
                if len(found) >= count:
                    break
        return found

    def executions_last_hour(self) -> int:
        hour_ago = self.clock() - 3600 * 1000
        return sum(1 for m in self._metrics if m.timestamp >= hour_ago)

    def should_allow(self, script_id: str, tab_id: int) -> Decision:
        """
        Decide whether another attempt may start.

        Denies on per-tab concurrency, hourly volume, or a script whose rolling
        average time or memory is already over its ceiling.
        """
        limits = self.limits
        if self._in_flight.get(tab_id, 0) >= limits.max_concurrent_per_tab:
            return Decision(False, f"Too many concurrent executions on tab {tab_id}")

        if self.executions_last_hour() >= limits.max_executions_per_hour:
            return Decision(False, "Hourly execution limit reached")

        recent = self._recent(script_id)
        if recent:
            avg_time = sum(m.execution_time for m in recent) / len(recent)
            if avg_time > limits.max_execution_time_ms:
                return Decision(
                    False,
                    f"Script {script_id} average execution time {avg_time:.0f}ms exceeds limit",
                )
            avg_memory = sum(m.memory_mb for m in recent) / len(recent)
            if avg_memory > limits.max_memory_mb:
                return Decision(
                    False,
                    f"Script {script_id} average memory {avg_memory:.1f}MB exceeds limit",
                )
        return Decision(True)

    def start_measurement(self, context: ExecutionContext) -> MeasurementHandle:
        handle = MeasurementHandle(
            id=uuid.uuid4().hex,
            script_id=context.script_id,
            tab_id=context.tab_id,
            started=time.perf_counter(),
        )
        self._active[handle.id] = handle
        self._in_flight[context.tab_id] = self._in_flight.get(context.tab_id, 0) + 1
        return handle

    def end_measurement(
        self,
        handle: MeasurementHandle,
        context: ExecutionContext,
        success: bool,
        error_type: Optional[str] = None,
        memory_mb: Optional[float] = None,
    ) -> ExecutionMetric:
        """Close a measurement, record its metric and check thresholds."""
        elapsed = (time.perf_counter() - handle.started) * 1000
        if self._active.pop(handle.id, None) is not None:
            remaining = self._in_flight.get(handle.tab_id, 0) - 1
            if remaining > 0:
                self._in_flight[handle.tab_id] = remaining
            else:
                self._in_flight.pop(handle.tab_id, None)

        metric = ExecutionMetric(
            script_id=context.script_id,
            tab_id=context.tab_id,
            execution_id=context.execution_id,
            execution_time=elapsed,
            memory_mb=memory_mb or 0.0,
            success=success,
            timestamp=self.clock(),
            error_type=error_type,
        )
        self.record_metric(metric)
        return metric

    def record_metric(self, metric: ExecutionMetric) -> List[PerformanceWarning]:
        self._metrics.append(metric)
        return self._check_thresholds(metric)

    def _warn(self, kind: str, severity: str, metric: ExecutionMetric, message: str,
              value: float, threshold: float) -> PerformanceWarning:
        warning = PerformanceWarning(
            type=kind,
            severity=severity,
            script_id=metric.script_id,
            message=message,
            value=value,
            threshold=threshold,
            timestamp=metric.timestamp,
        )
        self._warnings.append(warning)
        level = logging.ERROR if severity == "critical" else logging.WARNING
        self.logger.log(level, f"Performance warning [{severity}]: {message}")
        return warning

    def _check_thresholds(self, metric: ExecutionMetric) -> List[PerformanceWarning]:
        limits = self.limits
        raised: List[PerformanceWarning] = []

        if metric.execution_time > limits.max_execution_time_ms:
            ratio = metric.execution_time / limits.max_execution_time_ms
            raised.append(self._warn(
                "execution_time", severity_for_ratio(ratio), metric,
                f"Script {metric.script_id} took {metric.execution_time:.0f}ms",
                metric.execution_time, limits.max_execution_time_ms,
            ))

        if metric.memory_mb > limits.max_memory_mb:
            ratio = metric.memory_mb / limits.max_memory_mb
            raised.append(self._warn(
                "memory", severity_for_ratio(ratio), metric,
                f"Script {metric.script_id} used {metric.memory_mb:.1f}MB",
                metric.memory_mb, limits.max_memory_mb,
            ))

        recent = self._recent(metric.script_id)
        if len(recent) >= FAILURE_RATE_WINDOW:
            failure_rate = sum(1 for m in recent if not m.success) / len(recent)
            if failure_rate > 0.5:
                raised.append(self._warn(
                    "failure_rate", "critical" if failure_rate > 0.8 else "high", metric,
                    f"Script {metric.script_id} failure rate {failure_rate:.0%}",
                    failure_rate, 0.5,
                ))
        return raised

    def warnings(self, script_id: Optional[str] = None) -> List[PerformanceWarning]:
        if script_id is None:
            return list(self._warnings)
        return [w for w in self._warnings if w.script_id == script_id]

    def in_flight(self, tab_id: int) -> int:
        return self._in_flight.get(tab_id, 0)

    def performance_score(self, script_id: Optional[str] = None) -> float:
        """Weighted blend of success rate and time headroom, 0-100."""
        metrics = list(self._metrics) if script_id is None else self._recent(script_id, len(self._metrics))
        if not metrics:
            return 100.0
        success_rate = sum(1 for m in metrics if m.success) / len(metrics)
        avg_time = sum(m.execution_time for m in metrics) / len(metrics)
        time_score = max(0.0, 1.0 - avg_time / self.limits.max_execution_time_ms)
        score = self.limits.success_weight * success_rate + self.limits.time_weight * time_score
        return round(score * 100, 1)

    def statistics(self) -> Dict[str, Any]:
        metrics = list(self._metrics)
        total = len(metrics)
        return {
            "total_executions": total,
            "successful_executions": sum(1 for m in metrics if m.success),
            "failed_executions": sum(1 for m in metrics if not m.success),
            "average_execution_time": (
                sum(m.execution_time for m in metrics) / total if total else 0.0
            ),
            "average_memory_mb": sum(m.memory_mb for m in metrics) / total if total else 0.0,
            "executions_last_hour": self.executions_last_hour(),
            "active_executions": len(self._active),
            "warnings": len(self._warnings),
            "performance_score": self.performance_score(),
        }

    def sweep(self) -> int:
        """Drop metrics and warnings older than the retention window."""
        cutoff = self.clock() - self.limits.retention_ms
        before = len(self._metrics) + len(self._warnings)
        self._metrics = deque(
            (m for m in self._metrics if m.timestamp >= cutoff), maxlen=self.limits.max_metrics
        )
        self._warnings = deque(
            (w for w in self._warnings if w.timestamp >= cutoff), maxlen=self.limits.max_warnings
        )
        removed = before - len(self._metrics) - len(self._warnings)
        if removed:
            self.logger.info(f"Swept {removed} old metrics and warnings")
        return removed
