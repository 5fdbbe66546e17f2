# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
ScriptFlowService - the single entry point the CLI and integrations call.

build() wires the store, timers, engine components and scheduler from a
Config. Every public operation returns a Response instead of raising, so
callers only need to look at ``ok`` and ``error.code``.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from scriptflow.config import Config
from scriptflow.engine import (
    ErrorClassifier,
    ExecutionContextManager,
    PerformanceGovernor,
    ScriptExecutor,
    ScriptValidator,
    UrlMatcher,
)
from scriptflow.event_client import EventClient
from scriptflow.host import ExecutionHost, SubprocessHost
from scriptflow.scheduling import ConditionEvaluator, ErrorCode, Scheduler, SchedulingError
from scriptflow.scheduling.conditions import FactProvider
from scriptflow.schemas import ScheduleMode, ScheduleStatus, Script
from scriptflow.scripts import ScriptRepository, ScriptValidationError, load_userscript, parse_userscript
from scriptflow.store import JsonFileStore, Store, StoreError
from scriptflow.timers import AsyncioTimerService, TimerService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApiError:
    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


@dataclass(frozen=True)
class Response:
    """Outcome of one service call."""

    ok: bool
    data: Any = None
    error: Optional[ApiError] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok, "data": self.data}
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out


def _failure(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> Response:
    return Response(ok=False, error=ApiError(code, message, details or {}))


class ScriptFlowService:
    """Facade over the script repository, executor and scheduler."""

    def __init__(
        self,
        scripts: ScriptRepository,
        executor: ScriptExecutor,
        scheduler: Scheduler,
        timers: TimerService,
    ):
        self.scripts = scripts
        self.executor = executor
        self.scheduler = scheduler
        self.timers = timers
        self.contexts = executor.contexts

    @classmethod
    def build(
        cls,
        config: Optional[Config] = None,
        *,
        store: Optional[Store] = None,
        timers: Optional[TimerService] = None,
        host: Optional[ExecutionHost] = None,
        event_client: Optional[EventClient] = None,
        condition_provider: Optional[FactProvider] = None,
        clock: Optional[Callable[[], int]] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> "ScriptFlowService":
        """Construct every collaborator from configuration.

        Any collaborator passed explicitly replaces the one built from config,
        which is how tests swap in in-memory stores, manual timers and fake
        hosts.
        """
        config = config or Config()
        clock_kwargs = {"clock": clock} if clock is not None else {}

        store = store or JsonFileStore(config.store_path)
        timers = timers or AsyncioTimerService(store, **clock_kwargs)
        if host is None:
            host = SubprocessHost(config.section("host")["command"])
        if event_client is None:
            event_client = EventClient(config.events_path)

        scripts = ScriptRepository(store, **clock_kwargs)
        executor = ScriptExecutor(
            scripts,
            host,
            matcher=UrlMatcher(**config.section("matcher")),
            validator=ScriptValidator(),
            contexts=ExecutionContextManager(config.context_limits(), **clock_kwargs),
            errors=ErrorClassifier(**config.section("errors"), **clock_kwargs),
            governor=PerformanceGovernor(config.performance_limits(), **clock_kwargs),
            event_client=event_client,
            sleep=sleep,
            **config.section("executor"),
            **clock_kwargs,
        )
        scheduler = Scheduler(
            store,
            timers,
            executor,
            scripts,
            conditions=ConditionEvaluator(condition_provider),
            event_client=event_client,
            limits=config.scheduling_limits(),
            rng=rng,
            **clock_kwargs,
        )
        return cls(scripts, executor, scheduler, timers)

    async def _call(self, operation: Callable[[], Awaitable[Any]]) -> Response:
        try:
            return Response(ok=True, data=await operation())
        except SchedulingError as e:
            return _failure(e.code.value, e.message, e.context)
        except ScriptValidationError as e:
            return _failure("INVALID_SCRIPT", str(e))
        except StoreError as e:
            logger.error(f"Store failure: {e}")
            return _failure(ErrorCode.STORAGE_ERROR.value, str(e))

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> Response:
        return await self._call(self.scheduler.start)

    def stop(self) -> None:
        self.scheduler.stop()
        close = getattr(self.timers, "close", None)
        if close is not None:
            close()

    def maintenance(self) -> Dict[str, Any]:
        """Drop stale contexts, expired errors and old metrics."""
        swept = self.contexts.cleanup_stale()
        swept["errors"] = self.executor.errors.clear_old_errors()
        swept["metrics"] = self.executor.governor.sweep()
        return swept

    # -- scripts ------------------------------------------------------------

    async def add_script(
        self,
        path: Optional[Path] = None,
        code: Optional[str] = None,
        script_id: Optional[str] = None,
    ) -> Response:
        """Parse a userscript (from a file or source) and store it."""

        async def _add() -> Dict[str, Any]:
            if path is not None:
                script = load_userscript(path, script_id)
            else:
                script = parse_userscript(code or "", script_id)
            return (await self.scripts.save(script)).to_dict()

        return await self._call(_add)

    async def get_script(self, script_id: str) -> Response:
        script = await self.scripts.get(script_id)
        if script is None:
            return _failure(ErrorCode.SCRIPT_NOT_FOUND.value, f"Script not found: {script_id}")
        return Response(ok=True, data=script.to_dict())

    async def list_scripts(self) -> Response:
        async def _list() -> List[Dict[str, Any]]:
            return [s.to_dict() for s in await self.scripts.list()]

        return await self._call(_list)

    async def set_script_enabled(self, script_id: str, enabled: bool) -> Response:
        async def _toggle() -> Dict[str, Any]:
            script = await self.scripts.set_enabled(script_id, enabled)
            if script is None:
                raise SchedulingError(f"Script not found: {script_id}", ErrorCode.SCRIPT_NOT_FOUND)
            return script.to_dict()

        return await self._call(_toggle)

    async def remove_script(self, script_id: str) -> Response:
        """Delete a script along with every schedule that runs it."""

        async def _remove() -> Dict[str, Any]:
            if await self.scripts.get(script_id) is None:
                raise SchedulingError(f"Script not found: {script_id}", ErrorCode.SCRIPT_NOT_FOUND)
            removed = []
            if self.scheduler.started:
                for schedule in self.scheduler.list_schedules(script_id=script_id):
                    await self.scheduler.delete_schedule(schedule.id)
                    removed.append(schedule.id)
            await self.scripts.delete(script_id)
            return {"script_id": script_id, "schedules_removed": removed}

        return await self._call(_remove)

    def validate_script(self, script: Script) -> Response:
        validation = self.executor.validator.validate(script)
        data = {
            "ok": validation.ok,
            "errors": list(validation.errors),
            "warnings": list(validation.warnings),
            "security_level": validation.security_level,
            "csp_compliant": validation.csp_compliant,
        }
        return Response(ok=True, data=data)

    # -- execution ----------------------------------------------------------

    async def execute_script(self, script_id: str, tab_id: int, url: str, **options) -> Response:
        async def _execute() -> Dict[str, Any]:
            result = await self.executor.execute_script(script_id, tab_id, url, **options)
            return result.to_dict()

        return await self._call(_execute)

    async def execute_scripts_for_tab(
        self,
        tab_id: int,
        url: str,
        script_ids: Optional[List[str]] = None,
    ) -> Response:
        async def _execute() -> List[Dict[str, Any]]:
            results = await self.executor.execute_scripts_for_tab(tab_id, url, script_ids)
            return [r.to_dict() for r in results]

        return await self._call(_execute)

    def get_execution_statistics(self) -> Response:
        return Response(ok=True, data=self.executor.get_execution_statistics())

    async def update_tab_state(
        self,
        tab_id: int,
        url: str,
        status: str,
        ready: bool = False,
        title: str = "",
    ) -> Response:
        """Record a tab lifecycle change and run queued work that is now due."""

        async def _update() -> List[Dict[str, Any]]:
            self.contexts.update_tab_state(tab_id, url, status, ready=ready, title=title)
            results = await self.executor.run_pending(tab_id)
            return [r.to_dict() for r in results]

        return await self._call(_update)

    def close_tab(self, tab_id: int) -> Response:
        self.contexts.remove_tab(tab_id)
        return Response(ok=True, data={"tab_id": tab_id})

    # -- schedules ----------------------------------------------------------

    async def create_schedule(self, config: Dict[str, Any]) -> Response:
        async def _create() -> Dict[str, Any]:
            return (await self.scheduler.create_schedule(config)).to_dict()

        return await self._call(_create)

    async def update_schedule(self, schedule_id: str, changes: Dict[str, Any]) -> Response:
        async def _update() -> Dict[str, Any]:
            return (await self.scheduler.update_schedule(schedule_id, changes)).to_dict()

        return await self._call(_update)

    async def delete_schedule(self, schedule_id: str) -> Response:
        async def _delete() -> Dict[str, Any]:
            await self.scheduler.delete_schedule(schedule_id)
            return {"schedule_id": schedule_id}

        return await self._call(_delete)

    async def pause_schedule(self, schedule_id: str) -> Response:
        async def _pause() -> Dict[str, Any]:
            return (await self.scheduler.pause_schedule(schedule_id)).to_dict()

        return await self._call(_pause)

    async def resume_schedule(self, schedule_id: str) -> Response:
        async def _resume() -> Dict[str, Any]:
            return (await self.scheduler.resume_schedule(schedule_id)).to_dict()

        return await self._call(_resume)

    async def execute_schedule(self, schedule_id: str, force: bool = False) -> Response:
        async def _execute() -> Dict[str, Any]:
            return (await self.scheduler.execute_schedule(schedule_id, force=force)).to_dict()

        return await self._call(_execute)

    def list_schedules(self, filters: Optional[Dict[str, Any]] = None) -> Response:
        """List schedules; filters take script_id, status, mode, enabled and tags."""
        filters = dict(filters or {})
        try:
            if filters.get("status") is not None:
                filters["status"] = ScheduleStatus(filters["status"])
            if filters.get("mode") is not None:
                filters["mode"] = ScheduleMode(filters["mode"])
            schedules = self.scheduler.list_schedules(**filters)
        except (TypeError, ValueError) as e:
            return _failure(ErrorCode.INVALID_SCHEDULE_CONFIG.value, f"Invalid schedule filter: {e}")
        return Response(ok=True, data=[s.to_dict() for s in schedules])

    def schedule_history(self, schedule_id: str) -> Response:
        if self.scheduler.get_schedule(schedule_id) is None:
            return _failure(ErrorCode.SCHEDULE_NOT_FOUND.value, f"Schedule not found: {schedule_id}")
        return Response(ok=True, data=[r.to_dict() for r in self.scheduler.history(schedule_id)])

    def get_scheduler_stats(self) -> Response:
        return Response(ok=True, data=self.scheduler.get_stats())

    async def validate_schedule_config(self, config: Dict[str, Any], is_new: bool = True) -> Response:
        async def _validate() -> Dict[str, Any]:
            return (await self.scheduler.validate_schedule_config(config, is_new=is_new)).to_dict()

        return await self._call(_validate)

    async def deliver_event(self, name: str, tab_id: Optional[int] = None, url: Optional[str] = None) -> Response:
        async def _deliver() -> List[Dict[str, Any]]:
            return [r.to_dict() for r in await self.scheduler.deliver_event(name, tab_id=tab_id, url=url)]

        return await self._call(_deliver)
