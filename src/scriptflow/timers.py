# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""One-shot timers that survive restarts.

Armed timers are persisted in the store under ``timers`` and restored on first
listing, so a fresh process picks up where the previous one left off.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Protocol, Set

from scriptflow.store import Store

TIMERS_KEY = "timers"

TimerCallback = Callable[[str], Awaitable[None]]


class TimerService(Protocol):
    async def arm(self, timer_id: str, when_ms: int) -> None:
        ...

    async def disarm(self, timer_id: str) -> None:
        ...

    async def list_armed(self) -> Dict[str, int]:
        ...

    def set_callback(self, callback: TimerCallback) -> None:
        ...


def _now_ms() -> int:
    return int(time.time() * 1000)


class AsyncioTimerService:
    """TimerService on the running asyncio loop."""

    def __init__(self, store: Store, clock: Callable[[], int] = _now_ms):
        self.store = store
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._callback: Optional[TimerCallback] = None
        self._handles: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._restored = False
        self._lock = asyncio.Lock()

    def set_callback(self, callback: TimerCallback) -> None:
        self._callback = callback

    async def _load(self) -> Dict[str, int]:
        return dict(await self.store.get(TIMERS_KEY) or {})

    def _schedule(self, timer_id: str, when_ms: int) -> None:
        handle = self._handles.pop(timer_id, None)
        if handle is not None:
            handle.cancel()
        delay = max(0, when_ms - self.clock()) / 1000
        loop = asyncio.get_running_loop()
        self._handles[timer_id] = loop.call_later(delay, self._fire, timer_id)

    async def _restore(self) -> None:
        if self._restored:
            return
        self._restored = True
        for timer_id, when_ms in (await self._load()).items():
            if timer_id not in self._handles:
                self._schedule(timer_id, int(when_ms))

    async def arm(self, timer_id: str, when_ms: int) -> None:
        """Arm (or re-arm) a timer; persisted before it is scheduled."""
        await self._restore()
        async with self._lock:
            timers = await self._load()
            timers[timer_id] = int(when_ms)
            await self.store.set(TIMERS_KEY, timers)
        self._schedule(timer_id, when_ms)

    async def disarm(self, timer_id: str) -> None:
        handle = self._handles.pop(timer_id, None)
        if handle is not None:
            handle.cancel()
        await self._forget(timer_id)

    async def list_armed(self) -> Dict[str, int]:
        await self._restore()
        return await self._load()

    def close(self) -> None:
        """Cancel live handles; persisted timers stay for the next process."""
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def _fire(self, timer_id: str) -> None:
        self._handles.pop(timer_id, None)
        task = asyncio.ensure_future(self._dispatch(timer_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _forget(self, timer_id: str) -> None:
        async with self._lock:
            timers = await self._load()
            if timers.pop(timer_id, None) is not None:
                await self.store.set(TIMERS_KEY, timers)

    async def _dispatch(self, timer_id: str) -> None:
        await self._forget(timer_id)
        if self._callback is None:
            self.logger.warning(f"Timer {timer_id} fired with no callback set")
            return
        try:
            await self._callback(timer_id)
        except Exception:
            # Callback failures must not kill the loop; the owner re-arms on next start.
            self.logger.exception(f"Timer callback for {timer_id} failed")
