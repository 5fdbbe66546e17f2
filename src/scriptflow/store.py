"""Key-value persistence.

JsonFileStore keeps one JSON file per key under a root directory
(~/.scriptflow/store by default). Writes go to a temp file first and are
moved into place, so a crash never leaves a half-written value.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import json
import os
import re
from pathlib import Path
from typing import Any, Optional, Protocol


class StoreError(Exception):
    """Raised when a value cannot be read or written."""

    pass


KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class Store(Protocol):
    async def get(self, key: str) -> Any:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...

    async def delete(self, key: str) -> None:
        ...


class JsonFileStore:
    """File-backed store, one <key>.json per key."""

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()

    def _path(self, key: str) -> Path:
        if not KEY_PATTERN.match(key) or ".." in key:
            raise StoreError(f"invalid store key: {key!r}")
        return self.root / f"{key}.json"

    async def get(self, key: str) -> Optional[Any]:
        """Return the stored value, or None if the key was never set.

        Raises:
            StoreError: If the file exists but cannot be read or parsed.
        """
        path = self._path(key)
        if not path.exists():
            return None
        try:
            with open(path) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"cannot read {key}: {e}")

    async def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(value, f, indent=2)
            os.replace(tmp, path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"cannot write {key}: {e}")

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StoreError(f"cannot delete {key}: {e}")
