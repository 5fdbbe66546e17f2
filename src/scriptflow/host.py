"""Execution host - runs script source on behalf of a tab.

The pipeline only depends on the ExecutionHost protocol. SubprocessHost is the
shipped implementation: it pipes the code to an interpreter command.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import asyncio
import json
import os
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence


class HostTimeoutError(Exception):
    """Raised when an attempt exceeds its hard timeout."""

    pass


class ScriptRunError(Exception):
    """Raised when the host reports a failed run."""

    pass


@dataclass(frozen=True)
class HostResult:
    success: bool
    result: Any = None
    error: Optional[str] = None
    memory_mb: Optional[float] = None


class ExecutionHost(Protocol):
    async def run(self, code: str, tab_id: int, world: str) -> HostResult:
        ...


class SubprocessHost:
    """Runs script code through an external interpreter.

    The code is passed as the last argument of ``command`` (``node -e <code>``
    by default). A zero exit status is success; stdout is returned as the
    result (decoded as JSON when possible), stderr becomes the error.
    """

    def __init__(self, command: Optional[Sequence[str]] = None):
        self.command: List[str] = list(command or ["node", "-e"])

    async def run(self, code: str, tab_id: int, world: str) -> HostResult:
        # Build controlled environment
        env = os.environ.copy()
        env["SCRIPTFLOW_TAB_ID"] = str(tab_id)
        env["SCRIPTFLOW_WORLD"] = world

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                code,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return HostResult(success=False, error=f"Host API error: cannot start {self.command[0]}: {e}")

        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            proc.kill()
            await proc.wait()
            raise

        out = stdout.decode(errors="replace").strip()
        if proc.returncode != 0:
            # Keep the tail; interpreters put the actual error last
            lines = stderr.decode(errors="replace").strip().split("\n")
            tail = "\n".join(lines[-10:]) or f"exited with code {proc.returncode}"
            return HostResult(success=False, error=tail)

        try:
            result = json.loads(out) if out else None
        except json.JSONDecodeError:
            result = out
        return HostResult(success=True, result=result)
