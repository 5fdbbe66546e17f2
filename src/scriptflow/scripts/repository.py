"""Script repository.

Scripts are persisted as a single id -> script mapping under the
``scripts`` store key.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional

from scriptflow.schemas import Script
from scriptflow.scripts.metadata import validate_name
from scriptflow.store import Store

SCRIPTS_KEY = "scripts"

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ScriptRepository:
    """CRUD and counters for registered scripts."""

    def __init__(self, store: Store, clock: Callable[[], int] = _now_ms):
        self.store = store
        self.clock = clock
        # Serializes load-modify-save so concurrent runs never drop a counter.
        self._lock = asyncio.Lock()

    async def _load(self) -> Dict[str, Script]:
        raw = await self.store.get(SCRIPTS_KEY) or {}
        scripts = {}
        for script_id, data in raw.items():
            try:
                scripts[script_id] = Script.from_dict(data)
            except (KeyError, TypeError, ValueError) as e:
                # Corrupted entry - skip it, keep the rest
                logger.warning(f"Skipping unreadable script {script_id}: {e}")
        return scripts

    async def _save_all(self, scripts: Dict[str, Script]) -> None:
        await self.store.set(SCRIPTS_KEY, {k: s.to_dict() for k, s in scripts.items()})

    async def get(self, script_id: str) -> Optional[Script]:
        return (await self._load()).get(script_id)

    async def list(self) -> List[Script]:
        return sorted((await self._load()).values(), key=lambda s: s.id)

    async def save(self, script: Script) -> Script:
        """Insert or replace a script.

        Raises:
            ScriptValidationError: If the script id is not a valid name.
        """
        validate_name(script.id)
        async with self._lock:
            scripts = await self._load()
            now = self.clock()
            existing = scripts.get(script.id)
            if existing is not None:
                script.created_at = existing.created_at
                script.execution_count = max(script.execution_count, existing.execution_count)
                script.last_executed = script.last_executed or existing.last_executed
            elif script.created_at is None:
                script.created_at = now
            script.updated_at = now
            scripts[script.id] = script
            await self._save_all(scripts)
        return script

    async def delete(self, script_id: str) -> bool:
        async with self._lock:
            scripts = await self._load()
            if scripts.pop(script_id, None) is None:
                return False
            await self._save_all(scripts)
        return True

    async def set_enabled(self, script_id: str, enabled: bool) -> Optional[Script]:
        async with self._lock:
            scripts = await self._load()
            script = scripts.get(script_id)
            if script is None:
                return None
            script.enabled = enabled
            script.updated_at = self.clock()
            await self._save_all(scripts)
        return script

    async def record_execution(self, script_id: str) -> Optional[Script]:
        """Bump the execution counter and last-executed time."""
        async with self._lock:
            scripts = await self._load()
            script = scripts.get(script_id)
            if script is None:
                return None
            script.execution_count += 1
            script.last_executed = self.clock()
            await self._save_all(scripts)
        return script
