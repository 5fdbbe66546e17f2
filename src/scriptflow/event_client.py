# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""JSONL event log for script and schedule lifecycle events.

Each line is one event: ``script.*`` events carry the execution id as their
correlation id, ``schedule.*`` events the schedule or execution id. Writing
the log is best effort; a failed write is logged and the run goes on.
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def scriptflow_home() -> Path:
    """$SCRIPTFLOW_HOME, else ~/.scriptflow."""
    env_home = os.environ.get("SCRIPTFLOW_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.scriptflow").expanduser()


class EventClient:
    """Appends lifecycle events to a JSONL file."""

    def __init__(self, log_path: Optional[Path] = None):
        self.log_path = Path(log_path) if log_path else scriptflow_home() / "events.jsonl"

    def log_event(
        self,
        event_type: str,
        correlation_id: str,
        status: str,
        payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        line = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "source": "scriptflow",
            "event_type": event_type,
            "correlation_id": correlation_id,
            "status": status,
        }
        if payload:
            line["payload"] = payload
        if error_message:
            line["error_message"] = error_message

        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.log_path, "a") as f:
                f.write(json.dumps(line, default=str) + "\n")
        except OSError as e:
            logger.warning(f"Could not write {event_type} event to {self.log_path}: {e}")
