# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Scheduler - schedule lifecycle, timers and fire handling.

Every mutation builds a new schedule copy, arms or disarms its timer, persists
the full schedule map, and only then swaps the in-memory map. A failure at any
step raises SchedulingError and leaves the previous state in place.
"""

import asyncio
import logging
import random
import time
import uuid
from typing import Any, Callable, Dict, List, Optional, Set, Union

from scriptflow.engine.context import ExecutionContextManager
from scriptflow.engine.executor import ExecutionRequest, ScriptExecutor
from scriptflow.engine.url_matcher import UrlMatcher
from scriptflow.event_client import EventClient
from scriptflow.scheduling.conditions import ConditionEvaluator, ConditionFacts
from scriptflow.scheduling.errors import ErrorCode, SchedulingError
from scriptflow.scheduling.next_fire import compute_next_execution
from scriptflow.scheduling.validation import SchedulingLimits, validate_schedule
from scriptflow.schemas import (
    ConditionalTrigger,
    EventTrigger,
    ExecutionStatus,
    FieldIssue,
    Schedule,
    ScheduleMode,
    ScheduleRun,
    ScheduleStatus,
    ScheduleTrigger,
    Script,
    TabState,
    ValidationReport,
)
from scriptflow.scripts.repository import ScriptRepository
from scriptflow.store import Store, StoreError
from scriptflow.timers import TimerService

SCHEDULES_KEY = "schedules"
HISTORY_KEY = "schedule_history"
TIMER_PREFIX = "schedule_"

TERMINAL_STATUSES = (ScheduleStatus.COMPLETED, ScheduleStatus.EXPIRED)

# Validation issue code -> SchedulingError code, first match wins.
_ISSUE_CODES = (
    ("SCRIPT_NOT_FOUND", ErrorCode.SCRIPT_NOT_FOUND),
    ("QUOTA_EXCEEDED", ErrorCode.QUOTA_EXCEEDED),
    ("INVALID_CRON_EXPRESSION", ErrorCode.INVALID_CRON_EXPRESSION),
    ("INVALID_CONDITION", ErrorCode.INVALID_CONDITION),
)

# Fields a caller may change through update_schedule.
UPDATABLE_FIELDS = (
    "name",
    "description",
    "enabled",
    "priority",
    "timezone",
    "tags",
    "retry",
    "mode",
    "trigger",
)


def _now_ms() -> int:
    return int(time.time() * 1000)


def timer_id_for(schedule_id: str) -> str:
    return f"{TIMER_PREFIX}{schedule_id}"


class Scheduler:
    """Owns schedules, their timers and their run history."""

    def __init__(
        self,
        store: Store,
        timers: TimerService,
        executor: ScriptExecutor,
        scripts: ScriptRepository,
        *,
        contexts: Optional[ExecutionContextManager] = None,
        matcher: Optional[UrlMatcher] = None,
        conditions: Optional[ConditionEvaluator] = None,
        event_client: Optional[EventClient] = None,
        limits: Optional[SchedulingLimits] = None,
        clock: Callable[[], int] = _now_ms,
        rng: Optional[random.Random] = None,
    ):
        self.store = store
        self.timers = timers
        self.executor = executor
        self.scripts = scripts
        self.contexts = contexts or executor.contexts
        self.matcher = matcher or executor.matcher
        self.conditions = conditions or ConditionEvaluator()
        self.event_client = event_client
        self.limits = limits or SchedulingLimits()
        self.clock = clock
        self.rng = rng or random.Random()
        self.logger = logging.getLogger(__name__)
        self._schedules: Dict[str, Schedule] = {}
        self._history: Dict[str, List[ScheduleRun]] = {}
        self._firing: Set[str] = set()
        # Held across every copy-await-swap of _schedules.
        self._state_lock = asyncio.Lock()
        self._started_at: Optional[int] = None

    # -- lifecycle ----------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started_at is not None

    async def start(self) -> Dict[str, int]:
        """Load schedules and history, then reconcile timers with them."""
        if self.started:
            return {"orphans_cleared": 0, "rearmed": 0, "kept": 0}

        raw = await self.store.get(SCHEDULES_KEY) or {}
        schedules: Dict[str, Schedule] = {}
        for schedule_id, data in raw.items():
            try:
                schedules[schedule_id] = Schedule.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable schedule {schedule_id}: {e}")
        self._schedules = schedules

        raw_history = await self.store.get(HISTORY_KEY) or {}
        history: Dict[str, List[ScheduleRun]] = {}
        for schedule_id, runs in raw_history.items():
            try:
                history[schedule_id] = [ScheduleRun.from_dict(r) for r in runs]
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Dropping unreadable history for {schedule_id}: {e}")
        self._history = history

        self.timers.set_callback(self.handle_timer)
        self._started_at = self.clock()
        summary = await self.reconcile()
        self.logger.info(
            f"Scheduler started with {len(self._schedules)} schedules "
            f"({summary['rearmed']} re-armed, {summary['orphans_cleared']} orphan timers cleared)"
        )
        return summary

    def stop(self) -> None:
        """Stop accepting operations; armed timers stay persisted."""
        self._started_at = None

    async def reconcile(self) -> Dict[str, int]:
        """
        Bring armed timers in line with active schedules.

        Timers without an active schedule are disarmed, matching timers are
        left in place, and active schedules missing a timer are re-armed
        (overdue ones at the current time).
        """
        now = self.clock()
        armed = await self.timers.list_armed()
        orphans = 0
        for timer_id in armed:
            if not timer_id.startswith(TIMER_PREFIX):
                continue
            schedule = self._schedules.get(timer_id[len(TIMER_PREFIX):])
            if schedule is None or schedule.status is not ScheduleStatus.ACTIVE or schedule.next_execution is None:
                await self.timers.disarm(timer_id)
                orphans += 1
                self.logger.info(f"Cleared orphan timer {timer_id}")
                self._emit("timer.orphan_cleared", timer_id, "cleared", {"timer_id": timer_id})

        rearmed = 0
        kept = 0
        for schedule in list(self._schedules.values()):
            if schedule.status is not ScheduleStatus.ACTIVE:
                continue
            if schedule.next_execution is None:
                if schedule.mode in (ScheduleMode.EVENT, ScheduleMode.ONCE):
                    continue
                next_at, status = compute_next_execution(schedule, now, self.rng)
                await self._commit(schedule.copy(
                    next_execution=next_at,
                    status=status or schedule.status,
                    updated_at=now,
                ))
                rearmed += 1
                continue
            timer_id = timer_id_for(schedule.id)
            if timer_id in armed:
                kept += 1
                continue
            await self._arm(timer_id, max(schedule.next_execution, now))
            rearmed += 1
        return {"orphans_cleared": orphans, "rearmed": rearmed, "kept": kept}

    # -- CRUD ---------------------------------------------------------------

    async def validate_schedule_config(
        self,
        config: Union[Dict[str, Any], Schedule],
        is_new: bool = True,
    ) -> ValidationReport:
        """Validate a config without storing anything."""
        try:
            schedule = config if isinstance(config, Schedule) else Schedule.from_dict(config)
        except (KeyError, TypeError, ValueError) as e:
            report = ValidationReport()
            report.errors.append(FieldIssue("config", "INVALID_VALUE", f"Invalid schedule config: {e}"))
            return report

        script_exists = bool(schedule.script_id) and await self.scripts.get(schedule.script_id) is not None
        return validate_schedule(
            schedule,
            now=self.clock(),
            limits=self.limits,
            script_exists=script_exists,
            schedule_count=len(self._schedules),
            is_new=is_new,
        )

    async def create_schedule(self, config: Union[Dict[str, Any], Schedule]) -> Schedule:
        """
        Validate, store and arm a new schedule.

        Args:
            config: Schedule or its dict form. A missing id is generated.

        Returns:
            The stored schedule.

        Raises:
            SchedulingError: On invalid config, duplicate id, or timer/store failure.
        """
        self._require_started()
        schedule = self._parse(config)
        if not schedule.id:
            schedule = schedule.copy(id=f"sched_{uuid.uuid4().hex[:12]}")
        if schedule.id in self._schedules:
            raise SchedulingError(
                f"Schedule already exists: {schedule.id}",
                ErrorCode.SCHEDULE_EXISTS,
                {"schedule_id": schedule.id},
            )

        await self._raise_if_invalid(schedule, is_new=True)

        now = self.clock()
        schedule = schedule.copy(
            status=ScheduleStatus.ACTIVE if schedule.enabled else ScheduleStatus.DISABLED,
            next_execution=None,
            last_execution=None,
            execution_count=0,
            failure_count=0,
            consecutive_failures=0,
            created_at=now,
            updated_at=now,
        )
        if schedule.status is ScheduleStatus.ACTIVE:
            schedule = self._with_next(schedule, now)

        await self._commit(schedule)
        self.logger.info(f"Created {schedule.mode.value} schedule {schedule.id} for script {schedule.script_id}")
        return schedule

    async def update_schedule(self, schedule_id: str, changes: Dict[str, Any]) -> Schedule:
        """Apply changes to a schedule after validating the merged result."""
        self._require_started()
        existing = self._get_or_raise(schedule_id)
        if existing.status is ScheduleStatus.COMPLETED:
            raise SchedulingError(
                f"Schedule {schedule_id} is completed and cannot be updated",
                ErrorCode.INVALID_STATE,
                {"schedule_id": schedule_id, "status": existing.status.value},
            )

        merged = existing.to_dict()
        same_mode = changes.get("mode", merged["mode"]) == merged["mode"]
        for key in UPDATABLE_FIELDS:
            if key not in changes:
                continue
            if key == "trigger" and same_mode:
                merged["trigger"] = dict(merged["trigger"], **changes["trigger"])
            elif key == "retry":
                merged["retry"] = dict(merged["retry"], **changes["retry"])
            else:
                merged[key] = changes[key]
        candidate = self._parse(merged)

        await self._raise_if_invalid(candidate, is_new=False)

        now = self.clock()
        status = existing.status
        if not candidate.enabled:
            status = ScheduleStatus.DISABLED
        elif status is ScheduleStatus.DISABLED:
            status = ScheduleStatus.ACTIVE

        updated = candidate.copy(status=status, next_execution=None, updated_at=now)
        if status is ScheduleStatus.ACTIVE:
            updated = self._with_next(updated, now)

        await self._commit(updated)
        self.logger.info(f"Updated schedule {schedule_id}")
        return updated

    async def delete_schedule(self, schedule_id: str) -> None:
        self._require_started()
        self._get_or_raise(schedule_id)

        async with self._state_lock:
            remaining = {k: v for k, v in self._schedules.items() if k != schedule_id}
            await self._save_schedules(remaining)
            self._schedules = remaining

        try:
            await self.timers.disarm(timer_id_for(schedule_id))
        except Exception as e:
            # Left for reconcile; a fire for an unknown schedule disarms itself.
            self.logger.warning(f"Could not disarm timer for deleted schedule {schedule_id}: {e}")

        if self._history.pop(schedule_id, None) is not None:
            await self._save_history()
        self.logger.info(f"Deleted schedule {schedule_id}")

    async def pause_schedule(self, schedule_id: str) -> Schedule:
        self._require_started()
        schedule = self._get_or_raise(schedule_id)
        if schedule.status is not ScheduleStatus.ACTIVE:
            raise SchedulingError(
                f"Only active schedules can be paused (status: {schedule.status.value})",
                ErrorCode.INVALID_STATE,
                {"schedule_id": schedule_id, "status": schedule.status.value},
            )
        paused = schedule.copy(status=ScheduleStatus.PAUSED, next_execution=None, updated_at=self.clock())
        await self._commit(paused)
        self.logger.info(f"Paused schedule {schedule_id}")
        return paused

    async def resume_schedule(self, schedule_id: str) -> Schedule:
        """Re-activate a paused, disabled or failed schedule."""
        self._require_started()
        schedule = self._get_or_raise(schedule_id)
        if schedule.status is ScheduleStatus.ACTIVE or schedule.status in TERMINAL_STATUSES:
            raise SchedulingError(
                f"Schedule {schedule_id} cannot be resumed from {schedule.status.value}",
                ErrorCode.INVALID_STATE,
                {"schedule_id": schedule_id, "status": schedule.status.value},
            )

        now = self.clock()
        resumed = schedule.copy(
            status=ScheduleStatus.ACTIVE,
            enabled=True,
            consecutive_failures=0,
            updated_at=now,
        )
        resumed = self._with_next(resumed, now)
        if resumed.mode is ScheduleMode.ONCE and resumed.next_execution is None:
            raise SchedulingError(
                f"Schedule {schedule_id} execute time has already passed",
                ErrorCode.INVALID_STATE,
                {"schedule_id": schedule_id},
            )
        await self._commit(resumed)
        self.logger.info(f"Resumed schedule {schedule_id}")
        return resumed

    def get_schedule(self, schedule_id: str) -> Optional[Schedule]:
        return self._schedules.get(schedule_id)

    def list_schedules(
        self,
        script_id: Optional[str] = None,
        status: Optional[ScheduleStatus] = None,
        mode: Optional[ScheduleMode] = None,
        enabled: Optional[bool] = None,
        tags: Optional[List[str]] = None,
    ) -> List[Schedule]:
        """Schedules matching every given filter, highest priority first."""
        found = []
        for schedule in self._schedules.values():
            if script_id is not None and schedule.script_id != script_id:
                continue
            if status is not None and schedule.status is not status:
                continue
            if mode is not None and schedule.mode is not mode:
                continue
            if enabled is not None and schedule.enabled != enabled:
                continue
            if tags and not set(tags) & set(schedule.tags):
                continue
            found.append(schedule)
        return sorted(found, key=lambda s: (-s.priority, s.created_at or 0, s.id))

    def history(self, schedule_id: str) -> List[ScheduleRun]:
        return list(self._history.get(schedule_id, []))

    def get_stats(self) -> Dict[str, Any]:
        schedules = list(self._schedules.values())
        by_status = {status.value: 0 for status in ScheduleStatus}
        for schedule in schedules:
            by_status[schedule.status.value] += 1
        runs = [run for history in self._history.values() for run in history]
        total = sum(s.execution_count for s in schedules)
        failed = sum(s.failure_count for s in schedules)
        return {
            "total_schedules": len(schedules),
            "active_schedules": by_status["active"],
            "paused_schedules": by_status["paused"],
            "disabled_schedules": by_status["disabled"],
            "by_status": by_status,
            "total_executions": total,
            "successful_executions": total - failed,
            "failed_executions": failed,
            "average_execution_time": sum(r.duration for r in runs) / len(runs) if runs else 0.0,
            "uptime": self.clock() - self._started_at if self._started_at else 0,
        }

    # -- firing -------------------------------------------------------------

    async def handle_timer(self, timer_id: str) -> None:
        """
        Timer callback. Tolerates duplicate, early, late and unknown fires.
        """
        if not timer_id.startswith(TIMER_PREFIX):
            self.logger.debug(f"Ignoring foreign timer {timer_id}")
            return
        schedule_id = timer_id[len(TIMER_PREFIX):]
        schedule = self._schedules.get(schedule_id)

        if schedule is None:
            self.logger.info(f"Timer fired for unknown schedule {schedule_id}, disarming")
            await self.timers.disarm(timer_id)
            return
        if schedule.status is not ScheduleStatus.ACTIVE or schedule.next_execution is None:
            self.logger.debug(f"Timer fired for inactive schedule {schedule_id}")
            return
        if schedule_id in self._firing:
            self.logger.debug(f"Schedule {schedule_id} already firing, ignoring duplicate timer")
            return

        now = self.clock()
        if now + self.limits.timer_tolerance_ms < schedule.next_execution:
            # Early fire: the one-shot timer is spent, so put it back.
            self.logger.debug(f"Early timer for {schedule_id}, re-arming")
            await self._arm(timer_id, schedule.next_execution)
            return

        self._firing.add(schedule_id)
        try:
            if isinstance(schedule.trigger, ConditionalTrigger):
                if not await self._conditions_met(schedule, now):
                    await self._commit(schedule.copy(
                        next_execution=now + schedule.trigger.check_interval_ms,
                        updated_at=now,
                    ))
                    return
            await self._fire(schedule, source="system", advance=True)
        finally:
            self._firing.discard(schedule_id)

    async def execute_schedule(self, schedule_id: str, force: bool = False, source: str = "user") -> ScheduleRun:
        """Run a schedule now. Timers and status are left as they are."""
        self._require_started()
        schedule = self._get_or_raise(schedule_id)
        if not force and schedule.status is not ScheduleStatus.ACTIVE:
            raise SchedulingError(
                f"Schedule {schedule_id} is {schedule.status.value}; use force to run it anyway",
                ErrorCode.INVALID_STATE,
                {"schedule_id": schedule_id, "status": schedule.status.value},
            )
        if schedule_id in self._firing:
            raise SchedulingError(
                f"Schedule {schedule_id} is already running",
                ErrorCode.INVALID_STATE,
                {"schedule_id": schedule_id},
            )
        self._firing.add(schedule_id)
        try:
            return await self._fire(schedule, source=source, advance=False)
        finally:
            self._firing.discard(schedule_id)

    async def deliver_event(
        self,
        name: str,
        tab_id: Optional[int] = None,
        url: Optional[str] = None,
    ) -> List[ScheduleRun]:
        """Fire every active event schedule listening for ``name``."""
        self._require_started()
        now = self.clock()
        runs: List[ScheduleRun] = []
        for schedule in self.list_schedules(status=ScheduleStatus.ACTIVE, mode=ScheduleMode.EVENT):
            trigger = schedule.trigger
            if name not in trigger.events:
                continue
            if trigger.target_urls and (url is None or not self.matcher.matches_any(trigger.target_urls, url)):
                continue
            if self._cooling_down(schedule, trigger.cooldown_ms, now):
                self.logger.debug(f"Event {name} ignored for {schedule.id}: cooldown")
                continue
            if schedule.id in self._firing:
                continue
            self._firing.add(schedule.id)
            try:
                runs.append(await self._fire(
                    schedule, source="system", advance=True,
                    metadata={"event": name}, tab_id=tab_id,
                ))
            finally:
                self._firing.discard(schedule.id)
        return runs

    async def _conditions_met(self, schedule: Schedule, now: int) -> bool:
        trigger = schedule.trigger
        if self._cooling_down(schedule, trigger.cooldown_ms, now):
            return False
        script = await self.scripts.get(schedule.script_id)
        tab = self._resolve_tab(script, schedule) if script else None
        facts = ConditionFacts(
            now=now,
            timezone=schedule.timezone,
            tab_id=tab.tab_id if tab else None,
            url=tab.url if tab else "",
            title=tab.title if tab else "",
        )
        return await self.conditions.evaluate_all(trigger.conditions, facts)

    def _cooling_down(self, schedule: Schedule, cooldown_ms: int, now: int) -> bool:
        return bool(cooldown_ms) and schedule.last_execution is not None and now - schedule.last_execution < cooldown_ms

    def _resolve_tab(
        self,
        script: Script,
        schedule: Schedule,
        tab_id: Optional[int] = None,
    ) -> Optional[TabState]:
        """Most recently updated ready tab the script (and event targets) match."""
        tabs = self.contexts.tabs()
        if tab_id is not None:
            tabs = [t for t in tabs if t.tab_id == tab_id]
        eligible = [
            t for t in tabs
            if self.contexts.is_tab_ready(t.tab_id, script.run_at)
            and self.matcher.matches(script, t.url).matches
        ]
        if isinstance(schedule.trigger, EventTrigger) and schedule.trigger.target_urls:
            eligible = [t for t in eligible if self.matcher.matches_any(schedule.trigger.target_urls, t.url)]
        if not eligible:
            return None
        return max(eligible, key=lambda t: t.last_updated)

    async def _fire(
        self,
        schedule: Schedule,
        source: str,
        advance: bool,
        metadata: Optional[Dict[str, Any]] = None,
        tab_id: Optional[int] = None,
    ) -> ScheduleRun:
        start = self.clock()
        trigger = ScheduleTrigger(mode=schedule.mode, source=source, timestamp=start, metadata=metadata or {})
        self._emit("schedule.fired", schedule.id, "fired",
                   {"schedule_id": schedule.id, "script_id": schedule.script_id, "source": source})

        execution_id = f"exec_{schedule.id}_{start}_{uuid.uuid4().hex[:8]}"
        error: Optional[str] = None
        error_code: Optional[ErrorCode] = None
        retry_count = 0

        script = await self.scripts.get(schedule.script_id)
        tab = self._resolve_tab(script, schedule, tab_id) if script else None
        if script is None:
            error, error_code = f"Script not found: {schedule.script_id}", ErrorCode.SCRIPT_NOT_FOUND
        elif not script.enabled:
            error, error_code = f"Script {script.id} is disabled", ErrorCode.SCRIPT_DISABLED
        elif tab is None:
            error, error_code = f"No open tab matches script {script.id}", ErrorCode.NO_TARGET_TAB
        else:
            result = await self.executor.execute(ExecutionRequest(
                script_id=script.id,
                tab_id=tab.tab_id,
                url=tab.url,
                trigger=trigger,
                schedule_id=schedule.id,
                max_retries=schedule.retry.max_retries,
                timeout_ms=schedule.retry.timeout_ms,
                retry_delay_ms=schedule.retry.retry_delay_ms,
            ))
            execution_id = result.execution_id or execution_id
            retry_count = result.retry_count
            if not result.success:
                error = result.error
                error_code = (
                    ErrorCode.EXECUTION_BLOCKED
                    if result.status is ExecutionStatus.BLOCKED
                    else ErrorCode.EXECUTION_FAILED
                )

        run = ScheduleRun(
            execution_id=execution_id,
            schedule_id=schedule.id,
            script_id=schedule.script_id,
            success=error is None,
            start_time=start,
            end_time=self.clock(),
            trigger=trigger,
            error=error,
            error_code=error_code.value if error_code else None,
            retry_count=retry_count,
        )
        await self._record_run(schedule, run, advance)
        return run

    async def _record_run(self, schedule: Schedule, run: ScheduleRun, advance: bool) -> None:
        """Update counters and, for timer/event fires, the schedule's next state."""
        now = self.clock()
        # Re-read: the schedule may have been paused or updated while the script ran.
        current = self._schedules.get(schedule.id)
        if current is None:
            self.logger.info(f"Schedule {schedule.id} was deleted while running")
            return

        consecutive = 0 if run.success else current.consecutive_failures + 1
        updated = current.copy(
            last_execution=run.start_time,
            execution_count=current.execution_count + 1,
            failure_count=current.failure_count + (0 if run.success else 1),
            consecutive_failures=consecutive,
            updated_at=now,
        )

        if advance and current.status is ScheduleStatus.ACTIVE:
            if current.mode is ScheduleMode.ONCE:
                updated = updated.copy(
                    status=ScheduleStatus.COMPLETED if run.success else ScheduleStatus.FAILED,
                    next_execution=None,
                )
            elif consecutive >= self.limits.max_consecutive_failures:
                self.logger.error(
                    f"Schedule {schedule.id} failed {consecutive} times in a row, marking failed"
                )
                updated = updated.copy(status=ScheduleStatus.FAILED, next_execution=None)
            else:
                updated = self._with_next(updated, now)

        await self._commit(updated)
        await self._append_history(run)

        if run.success:
            self.logger.info(f"Schedule {schedule.id} ran script {schedule.script_id}")
            self._emit("schedule.completed", run.execution_id, "succeeded",
                       {"schedule_id": schedule.id, "duration_ms": run.duration,
                        "status": updated.status.value})
        else:
            self.logger.warning(f"Schedule {schedule.id} run failed: {run.error}")
            self._emit("schedule.failed", run.execution_id, "failed",
                       {"schedule_id": schedule.id, "error_code": run.error_code,
                        "status": updated.status.value},
                       error_message=run.error)

    # -- helpers ------------------------------------------------------------

    def _with_next(self, schedule: Schedule, now: int) -> Schedule:
        next_at, status = compute_next_execution(schedule, now, self.rng)
        if status is not None:
            self.logger.info(f"Schedule {schedule.id} is past its end time, expiring")
            return schedule.copy(status=status, next_execution=None)
        return schedule.copy(next_execution=next_at)

    def _require_started(self) -> None:
        if not self.started:
            raise SchedulingError("Scheduler is not started", ErrorCode.SCHEDULER_NOT_STARTED)

    def _get_or_raise(self, schedule_id: str) -> Schedule:
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            raise SchedulingError(
                f"Schedule not found: {schedule_id}",
                ErrorCode.SCHEDULE_NOT_FOUND,
                {"schedule_id": schedule_id},
            )
        return schedule

    def _parse(self, config: Union[Dict[str, Any], Schedule]) -> Schedule:
        if isinstance(config, Schedule):
            return config
        try:
            return Schedule.from_dict(config)
        except (KeyError, TypeError, ValueError) as e:
            raise SchedulingError(
                f"Invalid schedule config: {e}",
                ErrorCode.INVALID_SCHEDULE_CONFIG,
                {"config": config},
            )

    async def _raise_if_invalid(self, schedule: Schedule, is_new: bool) -> None:
        report = await self.validate_schedule_config(schedule, is_new=is_new)
        for warning in report.warnings:
            self.logger.warning(f"Schedule {schedule.id or schedule.name}: {warning.message}")
        if report.valid:
            return
        issue_codes = {issue.code for issue in report.errors}
        code = ErrorCode.INVALID_SCHEDULE_CONFIG
        for issue_code, error_code in _ISSUE_CODES:
            if issue_code in issue_codes:
                code = error_code
                break
        message = "; ".join(issue.message for issue in report.errors)
        raise SchedulingError(message, code, {"errors": report.to_dict()["errors"]})

    async def _arm(self, timer_id: str, when_ms: int) -> None:
        try:
            await self.timers.arm(timer_id, when_ms)
        except Exception as e:
            raise SchedulingError(
                f"Failed to arm timer {timer_id}: {e}",
                ErrorCode.ALARM_CREATION_FAILED,
                {"timer_id": timer_id},
                retryable=True,
            ) from e

    async def _commit(self, schedule: Schedule) -> None:
        """Sync the timer, persist, then swap in memory; roll the timer back on failure."""
        async with self._state_lock:
            await self._commit_locked(schedule)

    async def _commit_locked(self, schedule: Schedule) -> None:
        previous = self._schedules.get(schedule.id)
        timer_id = timer_id_for(schedule.id)
        wants_timer = schedule.status is ScheduleStatus.ACTIVE and schedule.next_execution is not None
        if schedule.status is not ScheduleStatus.ACTIVE:
            schedule = schedule.copy(next_execution=None)

        if wants_timer:
            await self._arm(timer_id, schedule.next_execution)
        else:
            try:
                await self.timers.disarm(timer_id)
            except Exception as e:
                raise SchedulingError(
                    f"Failed to disarm timer {timer_id}: {e}",
                    ErrorCode.SYSTEM_ERROR,
                    {"timer_id": timer_id},
                    retryable=True,
                ) from e

        updated = dict(self._schedules)
        updated[schedule.id] = schedule
        try:
            await self._save_schedules(updated)
        except SchedulingError:
            await self._restore_timer(timer_id, previous)
            raise
        self._schedules = updated

    async def _restore_timer(self, timer_id: str, previous: Optional[Schedule]) -> None:
        try:
            if previous is not None and previous.status is ScheduleStatus.ACTIVE and previous.next_execution is not None:
                await self.timers.arm(timer_id, previous.next_execution)
            else:
                await self.timers.disarm(timer_id)
        except Exception as e:
            self.logger.error(f"Could not restore timer {timer_id} after a failed save: {e}")

    async def _save_schedules(self, schedules: Dict[str, Schedule]) -> None:
        try:
            await self.store.set(SCHEDULES_KEY, {k: s.to_dict() for k, s in schedules.items()})
        except StoreError as e:
            raise SchedulingError(
                f"Failed to persist schedules: {e}",
                ErrorCode.STORAGE_ERROR,
                retryable=True,
            ) from e

    async def _append_history(self, run: ScheduleRun) -> None:
        runs = self._history.setdefault(run.schedule_id, [])
        runs.append(run)
        del runs[:-self.limits.max_history]
        await self._save_history()

    async def _save_history(self) -> None:
        try:
            await self.store.set(
                HISTORY_KEY,
                {k: [r.to_dict() for r in runs] for k, runs in self._history.items()},
            )
        except StoreError as e:
            # Run history is advisory; schedule state was already committed.
            self.logger.error(f"Failed to persist schedule history: {e}")

    def _emit(
        self,
        event_type: str,
        correlation_id: str,
        status: str,
        payload: Dict[str, Any],
        error_message: Optional[str] = None,
    ) -> None:
        if self.event_client is None:
            return
        self.event_client.log_event(
            event_type=event_type,
            correlation_id=correlation_id,
            status=status,
            payload=payload,
            error_message=error_message,
        )
