# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Execution context manager - per-tab document lifecycle and once-per-navigation
bookkeeping.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from scriptflow.schemas import ExecutionContext, Script, ScheduleTrigger, TabState


@dataclass(frozen=True)
class ContextLimits:
    max_execution_time_ms: int = 30000
    max_contexts_per_tab: int = 50
    max_total_contexts: int = 1000
    tab_ttl_ms: int = 3_600_000
    start_delay_ms: int = 100
    end_delay_ms: int = 0
    idle_delay_ms: int = 2000


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_execution_id(script_id: str, tab_id: int, timestamp: int) -> str:
    return f"exec_{script_id}_{tab_id}_{timestamp}_{uuid.uuid4().hex[:8]}"


class ExecutionContextManager:
    """Tracks tabs, live contexts and per-tab execution queues."""

    def __init__(
        self,
        limits: Optional[ContextLimits] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.limits = limits or ContextLimits()
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._tabs: Dict[int, TabState] = {}
        self._contexts: Dict[str, ExecutionContext] = {}

    # -- contexts -----------------------------------------------------------

    def create_context(
        self,
        script: Script,
        tab_id: int,
        url: str,
        retry_count: int = 0,
        max_retries: int = 3,
        schedule_id: Optional[str] = None,
        trigger: Optional[ScheduleTrigger] = None,
    ) -> ExecutionContext:
        """Create and register a fresh context for one logical request."""
        now = self.clock()
        context = ExecutionContext(
            script_id=script.id,
            tab_id=tab_id,
            url=url,
            timestamp=now,
            run_at=script.run_at,
            world=script.world,
            execution_id=new_execution_id(script.id, tab_id, now),
            retry_count=retry_count,
            max_retries=max_retries,
            schedule_id=schedule_id,
            trigger=trigger,
        )
        while self._contexts and len(self._contexts) >= self.limits.max_total_contexts:
            oldest = next(iter(self._contexts))
            del self._contexts[oldest]
        self._contexts[context.execution_id] = context
        return context

    def release_context(self, execution_id: str) -> None:
        self._contexts.pop(execution_id, None)

    def is_context_valid(self, context: ExecutionContext) -> bool:
        """A context goes stale when its tab vanished, navigated away, or it aged out."""
        tab = self._tabs.get(context.tab_id)
        if tab is None:
            return False
        if tab.url != context.url:
            return False
        return self.clock() - context.timestamp <= self.limits.max_execution_time_ms

    # -- tabs ---------------------------------------------------------------

    def update_tab_state(
        self,
        tab_id: int,
        url: str,
        status: str,
        ready: bool = False,
        title: str = "",
    ) -> TabState:
        """
        Record a lifecycle update for a tab.

        A URL change, or a fresh ``loading`` after ``complete``, counts as a
        navigation: the executed set and the pending queue are reset.
        """
        now = self.clock()
        tab = self._tabs.get(tab_id)
        if tab is None:
            tab = TabState(tab_id=tab_id, url=url, status=status, last_updated=now)
            self._tabs[tab_id] = tab
        else:
            navigated = tab.url != url or (tab.status == "complete" and status == "loading")
            if navigated:
                self.logger.debug(f"Tab {tab_id} navigated to {url}, resetting state")
                tab.scripts_executed.clear()
                tab.execution_queue.clear()
            tab.url = url
            tab.status = status
            tab.last_updated = now
        tab.document_ready = ready
        if title:
            tab.title = title
        return tab

    def remove_tab(self, tab_id: int) -> None:
        if self._tabs.pop(tab_id, None) is None:
            return
        for execution_id in [k for k, c in self._contexts.items() if c.tab_id == tab_id]:
            del self._contexts[execution_id]
        self.logger.debug(f"Tab {tab_id} removed")

    def get_tab(self, tab_id: int) -> Optional[TabState]:
        return self._tabs.get(tab_id)

    def tabs(self):
        return list(self._tabs.values())

    def is_tab_ready(self, tab_id: int, run_at: str) -> bool:
        """Readiness gate for the script's run-at timing."""
        tab = self._tabs.get(tab_id)
        if tab is None:
            return False
        if run_at == "document_start":
            return tab.status == "loading" and not tab.document_ready
        return tab.status == "complete" and tab.document_ready

    # -- executed set -------------------------------------------------------

    def is_executed(self, script_id: str, tab_id: int) -> bool:
        tab = self._tabs.get(tab_id)
        return tab is not None and script_id in tab.scripts_executed

    def mark_executed(self, script_id: str, tab_id: int) -> None:
        tab = self._tabs.get(tab_id)
        if tab is not None:
            tab.scripts_executed.add(script_id)

    def should_execute(self, script: Script, tab_id: int) -> bool:
        """True when the script is enabled, not yet run here and the tab is ready for it."""
        if not script.enabled:
            return False
        if self.is_executed(script.id, tab_id):
            return False
        return self.is_tab_ready(tab_id, script.run_at)

    # -- queue --------------------------------------------------------------

    def queue_execution(self, context: ExecutionContext) -> bool:
        """Queue a context until its tab becomes ready. False if the queue is full."""
        tab = self._tabs.get(context.tab_id)
        if tab is None:
            return False
        if len(tab.execution_queue) >= self.limits.max_contexts_per_tab:
            self.logger.warning(f"Execution queue full for tab {context.tab_id}")
            return False
        tab.execution_queue.append(context)
        return True

    def next_queued(self, tab_id: int) -> Optional[ExecutionContext]:
        tab = self._tabs.get(tab_id)
        if tab is None or not tab.execution_queue:
            return None
        return tab.execution_queue.pop(0)

    def execution_delay(self, run_at: str) -> int:
        """Delay in ms before running at the given document timing."""
        if run_at == "document_start":
            return self.limits.start_delay_ms
        if run_at == "document_end":
            return self.limits.end_delay_ms
        return self.limits.idle_delay_ms

    # -- maintenance --------------------------------------------------------

    def cleanup_stale(self) -> Dict[str, int]:
        """Sweep aged contexts, queued entries and idle tabs."""
        now = self.clock()
        max_age = 2 * self.limits.max_execution_time_ms

        stale_contexts = [k for k, c in self._contexts.items() if now - c.timestamp > max_age]
        for execution_id in stale_contexts:
            del self._contexts[execution_id]

        dropped_queued = 0
        for tab in self._tabs.values():
            kept = [c for c in tab.execution_queue if now - c.timestamp <= max_age]
            dropped_queued += len(tab.execution_queue) - len(kept)
            tab.execution_queue = kept

        stale_tabs = [t for t, s in self._tabs.items() if now - s.last_updated > self.limits.tab_ttl_ms]
        for tab_id in stale_tabs:
            self.remove_tab(tab_id)

        if stale_contexts or dropped_queued or stale_tabs:
            self.logger.info(
                f"Swept {len(stale_contexts)} contexts, {dropped_queued} queued, "
                f"{len(stale_tabs)} tabs"
            )
        return {
            "contexts": len(stale_contexts),
            "queued": dropped_queued,
            "tabs": len(stale_tabs),
        }

    def stats(self) -> Dict[str, int]:
        return {
            "active_tabs": len(self._tabs),
            "active_contexts": len(self._contexts),
            "queued_executions": sum(len(t.execution_queue) for t in self._tabs.values()),
            "executed_scripts": sum(len(t.scripts_executed) for t in self._tabs.values()),
        }
