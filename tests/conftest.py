# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Shared fakes: in-memory store, manual timers, scripted host and a fake clock."""

import asyncio
import copy
import random
from typing import Any, Dict, List, Optional, Set
from unittest.mock import MagicMock

import pytest

from scriptflow.host import HostResult
from scriptflow.schemas import Script
from scriptflow.service import ScriptFlowService
from scriptflow.store import StoreError

# 2026-01-01T00:00:00Z
START_MS = 1_767_225_600_000

HELLO_CODE = "document.title = 'hello';"


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class MemoryStore:
    """Store keeping JSON-shaped values in a dict; keys in fail_keys raise on set."""

    def __init__(self):
        self.data: Dict[str, Any] = {}
        self.fail_keys: Set[str] = set()

    async def get(self, key: str) -> Any:
        return copy.deepcopy(self.data.get(key))

    async def set(self, key: str, value: Any) -> None:
        if key in self.fail_keys:
            raise StoreError(f"write refused for {key}")
        self.data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)


class YieldingStore(MemoryStore):
    """MemoryStore that gives up the loop on every read and write, like real I/O."""

    async def get(self, key: str) -> Any:
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key: str, value: Any) -> None:
        await asyncio.sleep(0)
        await super().set(key, value)


class ManualTimerService:
    """TimerService that only fires when a test calls fire()."""

    def __init__(self):
        self.armed: Dict[str, int] = {}
        self.callback = None
        self.fail_arm = False
        self.fail_disarm = False

    async def arm(self, timer_id: str, when_ms: int) -> None:
        if self.fail_arm:
            raise RuntimeError("timer backend unavailable")
        self.armed[timer_id] = when_ms

    async def disarm(self, timer_id: str) -> None:
        if self.fail_disarm:
            raise RuntimeError("timer backend unavailable")
        self.armed.pop(timer_id, None)

    async def list_armed(self) -> Dict[str, int]:
        return dict(self.armed)

    def set_callback(self, callback) -> None:
        self.callback = callback

    async def fire(self, timer_id: str) -> None:
        self.armed.pop(timer_id, None)
        await self.callback(timer_id)


class FakeHost:
    """Returns queued outcomes in order, then the default; exceptions are raised."""

    def __init__(self, default: Optional[HostResult] = None):
        self.default = default or HostResult(success=True, result="ok")
        self.outcomes: List[Any] = []
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *outcomes: Any) -> None:
        self.outcomes.extend(outcomes)

    async def run(self, code: str, tab_id: int, world: str) -> HostResult:
        self.calls.append({"code": code, "tab_id": tab_id, "world": world})
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def make_script(**overrides) -> Script:
    fields = {
        "id": "hello",
        "name": "Hello",
        "code": HELLO_CODE,
        "matches": ["https://example.com/*"],
    }
    fields.update(overrides)
    return Script(**fields)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def timers():
    return ManualTimerService()


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def events():
    return MagicMock()


@pytest.fixture
def build_service(store, timers, host, events, clock, sleeps):
    """Factory so a test can build a second service over the same store (a restart)."""

    def _build(**overrides) -> ScriptFlowService:
        kwargs = {
            "store": store,
            "timers": timers,
            "host": host,
            "event_client": events,
            "clock": clock,
            "sleep": sleeps,
            "rng": random.Random(0),
        }
        kwargs.update(overrides)
        return ScriptFlowService.build(**kwargs)

    return _build


@pytest.fixture
def service(build_service):
    return build_service()
