# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Script validator - static security analysis of userscript source.

Dynamic-code and CSP-violating constructs are hard failures. Remote loading,
unsafe language constructs and missing cleanup raise the risk score and
produce warnings.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from scriptflow.schemas import Script
from scriptflow.schemas.script import RUN_AT_VALUES, WORLD_VALUES


MAX_CODE_SIZE = 1_000_000
MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500

RISK_WEIGHTS = {
    "eval": 40,
    "csp": 30,
    "remote": 35,
    "unsafe": 25,
    "leak": 15,
}

DYNAMIC_CODE_PATTERNS = (
    re.compile(r"\beval\s*\("),
    re.compile(r"\bnew\s+Function\s*\("),
    re.compile(r"(?<![\w$.])Function\s*\("),
    re.compile(r"\bset(?:Timeout|Interval)\s*\(\s*[\"'`]"),
    re.compile(r"\bimport\s*\("),
    re.compile(r"\brequire\s*\("),
    re.compile(r"\bdocument\.write(?:ln)?\s*\("),
)

CSP_VIOLATION_PATTERNS = (
    re.compile(r"<script[^>]*>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"<[^>]*\son[a-z]+\s*=", re.IGNORECASE),
    re.compile(r"<[^>]*\sstyle\s*=", re.IGNORECASE),
    re.compile(r"setAttribute\s*\(\s*[\"']on[a-z]+[\"']", re.IGNORECASE),
    re.compile(r"\bdata:\s*text/javascript", re.IGNORECASE),
    re.compile(r"\bblob:\s*text/javascript", re.IGNORECASE),
)

REMOTE_CODE_PATTERNS = (
    re.compile(r"createElement\s*\(\s*[\"']script[\"']\s*\)", re.IGNORECASE),
    re.compile(r"\.src\s*=\s*[\"'][^\"']*http", re.IGNORECASE),
    re.compile(r"fetch\s*\(\s*[\"'][^\"']*\.js[\"']", re.IGNORECASE),
    re.compile(r"fetch\s*\(\s*[\"'][^\"']*http", re.IGNORECASE),
    re.compile(r"\bXMLHttpRequest\b"),
)

UNSAFE_PATTERNS = (
    re.compile(r"\bwith\s*\("),
    re.compile(r"\bdelete\s+[A-Za-z_$][\w$]*\s*\["),
    re.compile(r"\barguments\s*\["),
    re.compile(r"\b(?:callee|caller)\s*\["),
    re.compile(r"\b__proto__\b"),
    re.compile(r"\bprototype\s*\["),
    re.compile(r"\bconstructor\s*\["),
    re.compile(r"\b(?:window|top|parent|self)\.location\s*=(?!=)"),
)

# (construct, teardown) pairs: a construct without its teardown is a leak risk.
CLEANUP_PAIRS = (
    (re.compile(r"\bsetInterval\s*\("), re.compile(r"\bclearInterval\s*\(")),
    (re.compile(r"\bsetTimeout\s*\("), re.compile(r"\bclearTimeout\s*\(")),
    (re.compile(r"\baddEventListener\s*\("), re.compile(r"\bremoveEventListener\s*\(")),
    (re.compile(r"\bnew\s+MutationObserver\s*\("), re.compile(r"\.disconnect\s*\(")),
)

CLEANUP_SUGGESTIONS = """\
// SCRIPTFLOW CLEANUP SUGGESTIONS:
// - Store interval IDs and clear them: clearInterval(intervalId)
// - Store timeout IDs and clear them: clearTimeout(timeoutId)
// - Remove event listeners: element.removeEventListener(type, handler)
// - Disconnect observers: observer.disconnect()

"""


@dataclass(frozen=True)
class SecurityAnalysis:
    has_eval: bool
    has_csp_violations: bool
    has_remote_scripts: bool
    has_unsafe_patterns: bool
    has_leak_risk: bool
    risk_score: int  # 0-100


@dataclass
class MetadataValidation:
    ok: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ScriptValidation:
    ok: bool
    errors: List[str]
    warnings: List[str]
    security_level: str  # safe | warning | dangerous
    csp_compliant: bool
    sanitized_code: Optional[str] = None
    analysis: Optional[SecurityAnalysis] = None


def _any(patterns, code: str) -> bool:
    return any(p.search(code) for p in patterns)


class ScriptValidator:
    """Validates script metadata and source before execution."""

    def __init__(self, max_code_size: int = MAX_CODE_SIZE):
        self.max_code_size = max_code_size
        self.logger = logging.getLogger(__name__)
        self._stats = {
            "total_validations": 0,
            "valid_scripts": 0,
            "invalid_scripts": 0,
            "dangerous_scripts": 0,
            "csp_violations": 0,
        }

    def validate_metadata(self, script: Script) -> MetadataValidation:
        """Check name, patterns, run-at timing and execution world."""
        errors: List[str] = []
        warnings: List[str] = []

        name = script.name if isinstance(script.name, str) else ""
        if not name.strip():
            errors.append("Script name is required")
        elif len(name) > MAX_NAME_LENGTH:
            errors.append(f"Script name must be at most {MAX_NAME_LENGTH} characters")

        if script.description and len(script.description) > MAX_DESCRIPTION_LENGTH:
            warnings.append("Script description is quite long")

        if not script.matches and not script.include:
            errors.append("Script must have at least one @match or @include pattern")

        if script.run_at not in RUN_AT_VALUES:
            errors.append(
                "Invalid @run-at value. Must be document_start, document_end, or document_idle"
            )

        if script.world not in WORLD_VALUES:
            errors.append("Invalid world value. Must be main or isolated")

        return MetadataValidation(ok=not errors, errors=errors, warnings=warnings)

    def analyze_security(self, code: str) -> SecurityAnalysis:
        has_eval = _any(DYNAMIC_CODE_PATTERNS, code)
        has_csp = _any(CSP_VIOLATION_PATTERNS, code)
        has_remote = _any(REMOTE_CODE_PATTERNS, code)
        has_unsafe = _any(UNSAFE_PATTERNS, code)
        has_leak = any(
            construct.search(code) and not teardown.search(code)
            for construct, teardown in CLEANUP_PAIRS
        )

        score = 0
        if has_eval:
            score += RISK_WEIGHTS["eval"]
        if has_csp:
            score += RISK_WEIGHTS["csp"]
        if has_remote:
            score += RISK_WEIGHTS["remote"]
        if has_unsafe:
            score += RISK_WEIGHTS["unsafe"]
        if has_leak:
            score += RISK_WEIGHTS["leak"]

        return SecurityAnalysis(
            has_eval=has_eval,
            has_csp_violations=has_csp,
            has_remote_scripts=has_remote,
            has_unsafe_patterns=has_unsafe,
            has_leak_risk=has_leak,
            risk_score=min(score, 100),
        )

    def validate(self, script: Script) -> ScriptValidation:
        """
        Validate script source for security and CSP compliance.

        Args:
            script: Script whose code is analysed.

        Returns:
            ScriptValidation; ok is False when any hard violation is present.
        """
        self._stats["total_validations"] += 1
        code = script.code if isinstance(script.code, str) else ""

        if not code.strip():
            return self._record(ScriptValidation(
                ok=False,
                errors=["Script code cannot be empty"],
                warnings=[],
                security_level="safe",
                csp_compliant=True,
            ))

        if len(code) > self.max_code_size:
            return self._record(ScriptValidation(
                ok=False,
                errors=[f"Script code is too large (max {self.max_code_size} bytes)"],
                warnings=[],
                security_level="dangerous",
                csp_compliant=False,
            ))

        analysis = self.analyze_security(code)
        errors: List[str] = []
        warnings: List[str] = []

        if analysis.has_eval:
            errors.append("Script contains dynamic code execution (eval, Function, string timers, dynamic import)")
        if analysis.has_csp_violations:
            errors.append("Script contains CSP violations (inline scripts, javascript: URLs, inline handlers)")
        if analysis.has_remote_scripts:
            warnings.append("Script loads remote code")
        if analysis.has_unsafe_patterns:
            warnings.append("Script uses unsafe language constructs")
        if analysis.has_leak_risk:
            warnings.append("Script may leak resources (timers or listeners without cleanup)")

        if errors:
            security_level = "dangerous"
        elif analysis.risk_score > 30:
            security_level = "warning"
        else:
            security_level = "safe"

        sanitized = None
        if not errors and warnings:
            sanitized = self.sanitize(code)

        return self._record(ScriptValidation(
            ok=not errors,
            errors=errors,
            warnings=warnings,
            security_level=security_level,
            csp_compliant=not analysis.has_eval and not analysis.has_csp_violations,
            sanitized_code=sanitized,
            analysis=analysis,
        ))

    def sanitize(self, code: str) -> str:
        """Neutralize blocked constructs and prepend cleanup guidance."""
        sanitized = code
        for pattern in DYNAMIC_CODE_PATTERNS:
            sanitized = pattern.sub("/* BLOCKED: dynamic code removed */", sanitized)
        for pattern in CSP_VIOLATION_PATTERNS:
            sanitized = pattern.sub("/* BLOCKED: CSP violation removed */", sanitized)
        if any(c.search(code) and not t.search(code) for c, t in CLEANUP_PAIRS):
            sanitized = CLEANUP_SUGGESTIONS + sanitized
        return sanitized

    def stats(self) -> Dict[str, int]:
        return dict(self._stats)

    def _record(self, result: ScriptValidation) -> ScriptValidation:
        if result.ok:
            self._stats["valid_scripts"] += 1
        else:
            self._stats["invalid_scripts"] += 1
        if result.security_level == "dangerous":
            self._stats["dangerous_scripts"] += 1
        if not result.csp_compliant:
            self._stats["csp_violations"] += 1
        if result.errors:
            self.logger.debug(f"Validation failed: {'; '.join(result.errors)}")
        return result
