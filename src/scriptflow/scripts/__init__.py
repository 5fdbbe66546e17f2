"""Userscript loading and the script repository.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

from scriptflow.scripts.metadata import (
    ScriptValidationError,
    load_userscript,
    parse_userscript,
    validate_name,
)
from scriptflow.scripts.repository import ScriptRepository

__all__ = [
    "ScriptValidationError",
    "ScriptRepository",
    "load_userscript",
    "parse_userscript",
    "validate_name",
]
