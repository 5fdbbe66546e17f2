"""Userscript header parsing and script id validation.

Reads the ``// ==UserScript==`` block of a ``*.user.js`` file into a Script.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from scriptflow.schemas import Script

logger = logging.getLogger(__name__)


class ScriptValidationError(Exception):
    """Raised when script validation fails."""

    pass


# Script id pattern: lowercase alphanumeric with hyphens only
NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")

HEADER_PATTERN = re.compile(r"//\s*==UserScript==(.*?)//\s*==/UserScript==", re.DOTALL)
DIRECTIVE_PATTERN = re.compile(r"^\s*//\s*@([\w-]+)(?:\s+(.*))?$")
SEMVER_PATTERN = re.compile(r"^\d+\.\d+\.\d+$")
MATCH_SCHEME_PATTERN = re.compile(r"^(\*|https?|file|ftp)://")

MAX_FIELD_LENGTH = 200
MAX_HEADER_PATTERN_LENGTH = 500

REQUIRE_ALLOWED_HOSTS = (
    "cdn.jsdelivr.net",
    "cdnjs.cloudflare.com",
    "unpkg.com",
    "code.jquery.com",
)

ALLOWED_GRANTS = (
    "none",
    "GM_getValue",
    "GM_setValue",
    "GM_deleteValue",
    "GM_listValues",
    "GM_xmlhttpRequest",
    "GM_addStyle",
    "GM_setClipboard",
    "GM_notification",
    "GM.getValue",
    "GM.setValue",
    "GM.deleteValue",
    "GM.listValues",
    "GM.xmlHttpRequest",
    "unsafeWindow",
    "window.close",
    "window.focus",
)

RUN_AT_HEADER_VALUES = ("document-start", "document-end", "document-idle")


def validate_name(name: str) -> None:
    """Validate script id.

    Script ids must be:
    - Lowercase alphanumeric with hyphens only: [a-z0-9-]+
    - No path separators (/, \\)
    - No dots (.)
    - No .. or path traversal attempts

    Args:
        name: Script id to validate.

    Raises:
        ScriptValidationError: If the id is invalid.
    """
    if not name:
        raise ScriptValidationError("script id cannot be empty")

    if ".." in name:
        raise ScriptValidationError(f"path traversal not allowed in script id: {name}")

    if "/" in name or "\\" in name:
        raise ScriptValidationError(f"path separators not allowed in script id: {name}")

    if "." in name:
        raise ScriptValidationError(f"dots not allowed in script id: {name}")

    if not NAME_PATTERN.match(name):
        raise ScriptValidationError(
            f"script id must be lowercase alphanumeric with hyphens only "
            f"([a-z0-9-]+), got: {name}"
        )


def slugify(name: str) -> str:
    """Derive a script id from a display name."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "script"


def _clean(value: str) -> str:
    return value.strip()[:MAX_FIELD_LENGTH]


def is_header_pattern_valid(pattern: str) -> bool:
    if pattern == "<all_urls>":
        return True
    if len(pattern) > MAX_HEADER_PATTERN_LENGTH:
        return False
    if not MATCH_SCHEME_PATTERN.match(pattern):
        return False
    return "<script>" not in pattern and "javascript:" not in pattern


def is_require_allowed(url: str) -> bool:
    """Only https URLs on an allow-listed CDN may be required."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    if parts.scheme != "https" or not parts.hostname:
        return False
    host = parts.hostname
    return any(host == d or host.endswith(f".{d}") for d in REQUIRE_ALLOWED_HOSTS)


def parse_userscript(code: str, script_id: Optional[str] = None) -> Script:
    """Parse a userscript into a Script.

    Args:
        code: Full userscript source, header included.
        script_id: Explicit id; derived from @name when omitted.

    Returns:
        Script carrying the header fields and the full source.

    Raises:
        ScriptValidationError: If the header is missing, has no @name, or
            declares no @match/@include pattern.
    """
    header = HEADER_PATTERN.search(code)
    if not header:
        raise ScriptValidationError("invalid userscript: missing ==UserScript== block")

    fields = {
        "name": "",
        "namespace": "",
        "version": "1.0.0",
        "description": "",
        "author": "",
    }
    matches, include, exclude, requires, grants = [], [], [], [], []
    run_at = "document-idle"
    noframes = False

    for line in header.group(1).splitlines():
        directive = DIRECTIVE_PATTERN.match(line)
        if not directive:
            continue
        key, value = directive.group(1), (directive.group(2) or "").strip()

        if key in ("name", "namespace", "description", "author"):
            fields[key] = _clean(value)
        elif key == "version":
            fields["version"] = value if SEMVER_PATTERN.match(value) else "1.0.0"
        elif key in ("match", "include", "exclude"):
            if not is_header_pattern_valid(value):
                logger.warning(f"Invalid @{key} pattern ignored: {value}")
                continue
            {"match": matches, "include": include, "exclude": exclude}[key].append(value)
        elif key == "require":
            if is_require_allowed(value):
                requires.append(value)
            else:
                logger.warning(f"Invalid @require URL ignored: {value}")
        elif key == "grant":
            if value in ALLOWED_GRANTS:
                grants.append(value)
            else:
                logger.warning(f"Invalid @grant value ignored: {value}")
        elif key == "run-at":
            if value in RUN_AT_HEADER_VALUES:
                run_at = value
        elif key == "noframes":
            noframes = True

    if not fields["name"]:
        raise ScriptValidationError("script must have @name")
    if not matches and not include:
        raise ScriptValidationError("script must have at least one @match or @include pattern")

    script_id = script_id or slugify(fields["name"])
    validate_name(script_id)

    return Script(
        id=script_id,
        name=fields["name"],
        code=code,
        matches=matches,
        include=include,
        exclude=exclude,
        run_at=run_at.replace("-", "_"),
        description=fields["description"],
        namespace=fields["namespace"],
        version=fields["version"],
        author=fields["author"],
        grants=grants,
        requires=requires,
        noframes=noframes,
    )


def load_userscript(path: Path, script_id: Optional[str] = None) -> Script:
    """Load and parse a ``*.user.js`` file.

    Raises:
        ScriptValidationError: If the file is missing, unreadable or invalid.
    """
    path = Path(path).expanduser()
    if not path.exists():
        raise ScriptValidationError(f"userscript not found: {path}")
    try:
        code = path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        raise ScriptValidationError(f"cannot read {path}: {e}")
    return parse_userscript(code, script_id)
