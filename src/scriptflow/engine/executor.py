# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Script executor - runs one execution request through the pipeline.

Requested -> Validating -> Matching -> Gating -> Running -> Succeeded | Failed

Validation, matching and gating fail fast. Running retries per the error
recovery policy, consulting the performance governor before every attempt.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Tuple

from scriptflow.engine.context import ExecutionContextManager
from scriptflow.engine.errors import ErrorClassifier, ScriptError
from scriptflow.engine.performance import PerformanceGovernor
from scriptflow.engine.url_matcher import UrlMatcher
from scriptflow.engine.validator import ScriptValidator
from scriptflow.event_client import EventClient
from scriptflow.host import ExecutionHost, HostResult, HostTimeoutError, ScriptRunError
from scriptflow.schemas import (
    ExecutionContext,
    ExecutionResult,
    ExecutionStatus,
    Script,
    ScheduleTrigger,
)
from scriptflow.scripts.repository import ScriptRepository


class ExecutionPhase(Enum):
    REQUESTED = "requested"
    VALIDATING = "validating"
    MATCHING = "matching"
    GATING = "gating"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ExecutionRequest:
    """One logical request to run a script in a tab.

    A request carrying a scheduler trigger bypasses the once-per-navigation
    guard; ``force`` additionally runs disabled scripts.
    """

    script_id: str
    tab_id: int
    url: str
    force: bool = False
    trigger: Optional[ScheduleTrigger] = None
    schedule_id: Optional[str] = None
    max_retries: Optional[int] = None
    timeout_ms: Optional[int] = None
    retry_delay_ms: Optional[int] = None


def _now_ms() -> int:
    return int(time.time() * 1000)


class ScriptExecutor:
    """Orchestrates validation, matching, gating and retried host runs."""

    def __init__(
        self,
        scripts: ScriptRepository,
        host: ExecutionHost,
        *,
        matcher: Optional[UrlMatcher] = None,
        validator: Optional[ScriptValidator] = None,
        contexts: Optional[ExecutionContextManager] = None,
        errors: Optional[ErrorClassifier] = None,
        governor: Optional[PerformanceGovernor] = None,
        event_client: Optional[EventClient] = None,
        history_limit: int = 10000,
        attempt_timeout_ms: int = 30000,
        default_max_retries: int = 3,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], int] = _now_ms,
    ):
        self.scripts = scripts
        self.host = host
        self.matcher = matcher or UrlMatcher()
        self.validator = validator or ScriptValidator()
        self.contexts = contexts or ExecutionContextManager(clock=clock)
        self.errors = errors or ErrorClassifier(clock=clock)
        self.governor = governor or PerformanceGovernor(clock=clock)
        self.event_client = event_client
        self.attempt_timeout_ms = attempt_timeout_ms
        self.default_max_retries = default_max_retries
        self.sleep = sleep
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._history: Deque[ExecutionResult] = deque(maxlen=history_limit)

    # -- public API ---------------------------------------------------------

    async def execute_script(self, script_id: str, tab_id: int, url: str, **options) -> ExecutionResult:
        return await self.execute(ExecutionRequest(script_id=script_id, tab_id=tab_id, url=url, **options))

    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        """
        Run one execution request to a terminal result.

        Args:
            request: What to run, where, and with which retry settings.

        Returns:
            ExecutionResult; never raises for script-level failures.
        """
        started = time.perf_counter()
        self._enter(ExecutionPhase.REQUESTED, request)

        script = await self.scripts.get(request.script_id)
        if script is None:
            return self._finish(request, started, ExecutionStatus.REJECTED,
                                error=f"Script not found: {request.script_id}")
        if not script.enabled and not request.force:
            return self._finish(request, started, ExecutionStatus.REJECTED,
                                error=f"Script {script.id} is disabled")

        self._enter(ExecutionPhase.VALIDATING, request)
        code, problem = self._validate(script)
        if problem is not None:
            script_error = self.errors.handle(problem, extra={"script_id": script.id, "tab_id": request.tab_id})
            return self._finish(request, started, ExecutionStatus.REJECTED,
                                error=problem, category=script_error.category)

        self._enter(ExecutionPhase.MATCHING, request)
        match = self.matcher.matches(script, request.url)
        if not match.matches:
            return self._finish(request, started, ExecutionStatus.REJECTED,
                                error=f"Script {script.id} does not match URL ({match.reason})")

        self._enter(ExecutionPhase.GATING, request)
        tab = self.contexts.get_tab(request.tab_id)
        if tab is None:
            return self._finish(request, started, ExecutionStatus.REJECTED,
                                error=f"Tab {request.tab_id} is not tracked")

        scheduled = request.trigger is not None
        if not scheduled and not request.force and self.contexts.is_executed(script.id, request.tab_id):
            return self._finish(request, started, ExecutionStatus.REJECTED,
                                error=f"Script {script.id} already executed in tab {request.tab_id}")

        max_retries = request.max_retries if request.max_retries is not None else self.default_max_retries
        context = self.contexts.create_context(
            script,
            request.tab_id,
            request.url,
            max_retries=max_retries,
            schedule_id=request.schedule_id,
            trigger=request.trigger,
        )

        if not self.contexts.is_tab_ready(request.tab_id, script.run_at):
            if self.contexts.queue_execution(context):
                self.logger.debug(f"Tab {request.tab_id} not ready for {script.run_at}, queued {script.id}")
                return self._finish(request, started, ExecutionStatus.QUEUED,
                                    error=f"Waiting for {script.run_at} in tab {request.tab_id}",
                                    execution_id=context.execution_id, record=False)
            self.contexts.release_context(context.execution_id)
            return self._finish(request, started, ExecutionStatus.REJECTED,
                                error=f"Execution queue full for tab {request.tab_id}",
                                execution_id=context.execution_id)

        if not self.contexts.is_context_valid(context):
            self.contexts.release_context(context.execution_id)
            return self._finish(request, started, ExecutionStatus.REJECTED,
                                error="Execution context is no longer valid",
                                execution_id=context.execution_id)

        self._enter(ExecutionPhase.RUNNING, request)
        try:
            return await self._run_with_retries(script, code, context, request, started)
        finally:
            self.contexts.release_context(context.execution_id)

    async def execute_scripts_for_tab(
        self,
        tab_id: int,
        url: str,
        script_ids: Optional[Iterable[str]] = None,
    ) -> List[ExecutionResult]:
        """Run every enabled script matching the URL, concurrently."""
        wanted = set(script_ids) if script_ids is not None else None
        candidates = [
            s for s in await self.scripts.list()
            if wanted is None or s.id in wanted
        ]
        matching = self.matcher.matching_scripts(candidates, url)
        requests = [ExecutionRequest(script_id=s.id, tab_id=tab_id, url=url) for s in matching]

        outcomes = await asyncio.gather(*(self.execute(r) for r in requests), return_exceptions=True)

        results: List[ExecutionResult] = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                self.logger.error(f"Execution of {request.script_id} on tab {tab_id} crashed: {outcome}")
                results.append(self._finish(request, time.perf_counter(), ExecutionStatus.FAILED,
                                            error=str(outcome), category="unknown"))
            else:
                results.append(outcome)
        return results

    async def run_pending(self, tab_id: int) -> List[ExecutionResult]:
        """Drain the tab's queue, running contexts whose timing has arrived."""
        pending: List[ExecutionContext] = []
        context = self.contexts.next_queued(tab_id)
        while context is not None:
            pending.append(context)
            context = self.contexts.next_queued(tab_id)

        results: List[ExecutionResult] = []
        for context in pending:
            if not self.contexts.is_context_valid(context):
                self.logger.debug(f"Discarding stale queued context {context.execution_id}")
                self.contexts.release_context(context.execution_id)
                continue
            if not self.contexts.is_tab_ready(tab_id, context.run_at):
                self.contexts.queue_execution(context)
                continue
            delay = self.contexts.execution_delay(context.run_at)
            if delay:
                await self.sleep(delay / 1000)
            self.contexts.release_context(context.execution_id)
            results.append(await self.execute(ExecutionRequest(
                script_id=context.script_id,
                tab_id=tab_id,
                url=context.url,
                trigger=context.trigger,
                schedule_id=context.schedule_id,
                max_retries=context.max_retries,
            )))
        return results

    def history(self, script_id: Optional[str] = None, limit: Optional[int] = None) -> List[ExecutionResult]:
        results = [r for r in self._history if script_id is None or r.script_id == script_id]
        return results[-limit:] if limit else results

    def get_execution_statistics(self) -> Dict[str, Any]:
        results = list(self._history)
        total = len(results)
        succeeded = [r for r in results if r.success]
        by_tab: Dict[int, int] = {}
        for r in results:
            by_tab[r.tab_id] = by_tab.get(r.tab_id, 0) + 1
        return {
            "total_executions": total,
            "successful_executions": len(succeeded),
            "failed_executions": sum(1 for r in results if r.status is ExecutionStatus.FAILED),
            "blocked_executions": sum(1 for r in results if r.status is ExecutionStatus.BLOCKED),
            "rejected_executions": sum(1 for r in results if r.status is ExecutionStatus.REJECTED),
            "success_rate": len(succeeded) / total if total else 0.0,
            "average_execution_time": (
                sum(r.execution_time for r in succeeded) / len(succeeded) if succeeded else 0.0
            ),
            "scripts_by_tab": by_tab,
            "performance_warnings": len(self.governor.warnings()),
            "errors": self.errors.statistics(),
            "performance": self.governor.statistics(),
            "contexts": self.contexts.stats(),
            "pattern_cache": self.matcher.cache_stats(),
            "validation": self.validator.stats(),
        }

    # -- pipeline steps -----------------------------------------------------

    def _validate(self, script: Script) -> Tuple[str, Optional[str]]:
        """Return (code to run, None), or ("", problem) when validation fails."""
        meta = self.validator.validate_metadata(script)
        if not meta.ok:
            return "", f"Script validation failed: {'; '.join(meta.errors)}"

        validation = self.validator.validate(script)
        if not validation.ok:
            return "", f"Script validation failed: {'; '.join(validation.errors)}"

        for warning in validation.warnings:
            self.logger.info(f"Script {script.id}: {warning}")
        return validation.sanitized_code or script.code, None

    async def _run_with_retries(
        self,
        script: Script,
        code: str,
        context: ExecutionContext,
        request: ExecutionRequest,
        started: float,
    ) -> ExecutionResult:
        timeout_ms = request.timeout_ms or self.attempt_timeout_ms
        last_error: Optional[ScriptError] = None
        attempt = 0

        self._emit("script.started", context, "started", {"script": script.id, "url": context.url})

        for attempt in range(context.max_retries + 1):
            attempt_context = replace(context, retry_count=attempt)

            decision = self.governor.should_allow(script.id, context.tab_id)
            if not decision.allowed:
                self.logger.warning(f"Execution of {script.id} blocked: {decision.reason}")
                self._emit("script.blocked", attempt_context, "blocked",
                           {"script": script.id, "reason": decision.reason})
                return self._finish(request, started, ExecutionStatus.BLOCKED,
                                    error=decision.reason, execution_id=context.execution_id,
                                    retry_count=attempt, attempts=attempt)

            handle = self.governor.start_measurement(attempt_context)
            host_result: Optional[HostResult] = None
            try:
                host_result = await asyncio.wait_for(
                    self.host.run(code, context.tab_id, context.world),
                    timeout=timeout_ms / 1000,
                )
                if not host_result.success:
                    raise ScriptRunError(host_result.error or "Script execution failed")
            except asyncio.TimeoutError:
                error: Exception = HostTimeoutError(f"Script execution timeout after {timeout_ms}ms")
            except Exception as e:
                error = e
            else:
                self.governor.end_measurement(handle, attempt_context, True, memory_mb=host_result.memory_mb)
                return await self._succeeded(script, attempt_context, request, started, host_result)

            last_error = self.errors.handle(error, attempt_context)
            self.governor.end_measurement(
                handle,
                attempt_context,
                False,
                error_type=last_error.category,
                memory_mb=host_result.memory_mb if host_result else None,
            )

            if not self.errors.should_retry(last_error):
                break
            delay_ms = (
                request.retry_delay_ms
                if request.retry_delay_ms is not None
                else self.errors.retry_delay(last_error)
            )
            self.logger.info(
                f"Retrying {script.id} in {delay_ms}ms (attempt {attempt + 2}/{context.max_retries + 1})"
            )
            await self.sleep(delay_ms / 1000)

        return await self._failed(script, context, request, started, last_error, attempt)

    async def _succeeded(
        self,
        script: Script,
        context: ExecutionContext,
        request: ExecutionRequest,
        started: float,
        host_result: HostResult,
    ) -> ExecutionResult:
        self._enter(ExecutionPhase.SUCCEEDED, request)
        self.contexts.mark_executed(script.id, context.tab_id)
        await self.scripts.record_execution(script.id)
        result = self._finish(
            request, started, ExecutionStatus.SUCCEEDED,
            execution_id=context.execution_id,
            retry_count=context.retry_count,
            attempts=context.retry_count + 1,
            result=host_result.result,
        )
        self._emit("script.completed", context, "succeeded",
                   {"script": script.id, "duration_ms": round(result.execution_time),
                    "retry_count": context.retry_count})
        return result

    async def _failed(
        self,
        script: Script,
        context: ExecutionContext,
        request: ExecutionRequest,
        started: float,
        script_error: ScriptError,
        attempt: int,
    ) -> ExecutionResult:
        self._enter(ExecutionPhase.FAILED, request)
        result = self._finish(
            request, started, ExecutionStatus.FAILED,
            error=script_error.message,
            category=script_error.category,
            execution_id=context.execution_id,
            retry_count=attempt,
            attempts=attempt + 1,
            can_retry=self.errors.should_retry(script_error),
        )
        self._emit("script.failed", context, "failed",
                   {"script": script.id, "category": script_error.category, "attempts": attempt + 1},
                   error_message=script_error.message)
        await self._apply_fallback(script, context, script_error)
        return result

    async def _apply_fallback(self, script: Script, context: ExecutionContext, script_error: ScriptError) -> None:
        fallback = self.errors.policy_for(script_error.category).fallback
        if fallback == "disable_script":
            await self.scripts.set_enabled(script.id, False)
            self.logger.warning(f"Script {script.id} disabled after {script_error.category} error")
            self._emit("script.disabled", context, "disabled",
                       {"script": script.id, "category": script_error.category},
                       error_message=script_error.message)
        elif fallback == "report":
            self.logger.error(f"Script {script.id} needs attention: {script_error.message}")
            self._emit("script.attention_required", context, "attention_required",
                       {"script": script.id, "category": script_error.category},
                       error_message=script_error.message)
        else:
            self.logger.debug(f"Skipping failed script {script.id}")

    # -- bookkeeping --------------------------------------------------------

    def _enter(self, phase: ExecutionPhase, request: ExecutionRequest) -> None:
        self.logger.debug(f"[{phase.value}] {request.script_id} on tab {request.tab_id}")

    def _finish(
        self,
        request: ExecutionRequest,
        started: float,
        status: ExecutionStatus,
        error: Optional[str] = None,
        category: Optional[str] = None,
        execution_id: Optional[str] = None,
        retry_count: int = 0,
        attempts: int = 0,
        can_retry: bool = False,
        result: Any = None,
        record: bool = True,
    ) -> ExecutionResult:
        outcome = ExecutionResult(
            status=status,
            script_id=request.script_id,
            tab_id=request.tab_id,
            execution_time=(time.perf_counter() - started) * 1000,
            retry_count=retry_count,
            attempts=attempts,
            can_retry=can_retry,
            error=error,
            error_category=category,
            execution_id=execution_id,
            result=result,
            timestamp=self.clock(),
        )
        if status is ExecutionStatus.REJECTED:
            self.logger.info(f"Execution of {request.script_id} rejected: {error}")
        if record:
            self._history.append(outcome)
        return outcome

    def _emit(
        self,
        event_type: str,
        context: ExecutionContext,
        status: str,
        payload: Dict[str, Any],
        error_message: Optional[str] = None,
    ) -> None:
        if self.event_client is None:
            return
        payload = dict(payload, tab_id=context.tab_id, retry_count=context.retry_count)
        if context.schedule_id:
            payload["schedule_id"] = context.schedule_id
        self.event_client.log_event(
            event_type=event_type,
            correlation_id=context.execution_id,
            status=status,
            payload=payload,
            error_message=error_message,
        )
