# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
URL pattern matching for @match, @include and @exclude directives.

Patterns are screened for nested-quantifier shapes before they ever reach
re.compile, normalized into anchored regexes, and cached per (kind, pattern).
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from scriptflow.schemas import Script


PATTERN_KINDS = ("match", "include", "exclude")

MAX_PATTERN_LENGTH = 2000
DEFAULT_CACHE_SIZE = 1000

# Nested-quantifier shapes that can trigger catastrophic backtracking.
REDOS_PATTERNS = (
    re.compile(r"\(.*\)\*"),
    re.compile(r"\(.*\)\+.*\*"),
    re.compile(r"\(.*\)\{.*,.*\}.*\*"),
    re.compile(r"\(.*\)\*.*\(.*\)\*"),
    re.compile(r"\(.*\+.*\)\*"),
    re.compile(r"\(.*\*.*\)\*"),
    re.compile(r"\(.*\)\+"),
    re.compile(r"\(.*\)\{\d*,\d*\}"),
)

QUANTIFIER_CHARS = re.compile(r"[+*?{}]")

# Characters escaped during normalization; * and ? stay wildcards.
_ESCAPE_CHARS = re.compile(r"[.+^${}()|\[\]\\]")

ALL_URLS_REGEX = r"^(https?|wss?|file|ftp)://.*$"


@dataclass(frozen=True)
class PatternValidation:
    ok: bool
    normalized: Optional[str] = None
    warning: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CompiledPattern:
    kind: str
    pattern: str
    regex: "re.Pattern[str]"
    is_wildcard: bool
    complexity: str  # low | medium | high


@dataclass(frozen=True)
class MatchResult:
    matches: bool
    reason: str  # match | include | exclude | no_pattern
    pattern: Optional[str] = None
    execution_time: float = 0.0  # ms


def complexity_score(normalized: str) -> int:
    return len(normalized) + 2 * len(QUANTIFIER_CHARS.findall(normalized))


def complexity_class(normalized: str) -> str:
    score = complexity_score(normalized)
    if score < 50:
        return "low"
    if score < 200:
        return "medium"
    return "high"


def contains_redos_shape(pattern: str) -> bool:
    return any(shape.search(pattern) for shape in REDOS_PATTERNS)


def _wildcards_to_regex(pattern: str) -> str:
    regex = _ESCAPE_CHARS.sub(lambda m: "\\" + m.group(0), pattern)
    regex = regex.replace("**", "\x00")
    regex = regex.replace("*", ".*").replace("?", ".")
    regex = regex.replace("\x00", ".*")
    if not regex.startswith("^"):
        regex = "^" + regex
    if not regex.endswith("$"):
        regex = regex + "$"
    return regex


def normalize_pattern(pattern: str, kind: str) -> str:
    """Convert a match pattern or include/exclude glob into an anchored regex."""
    pattern = pattern.strip()
    if kind == "match" and pattern == "<all_urls>":
        return ALL_URLS_REGEX
    return _wildcards_to_regex(pattern)


def _url_for_matching(url: str) -> Optional[str]:
    """Return the URL as origin + path + query + fragment, or None if invalid."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme:
        return None
    if parts.scheme == "file":
        host = ""
    else:
        if not parts.hostname:
            return None
        host = parts.hostname
        if parts.port:
            host = f"{host}:{parts.port}"
    path = parts.path or "/"
    result = f"{parts.scheme}://{host}{path}"
    if parts.query:
        result += f"?{parts.query}"
    if parts.fragment:
        result += f"#{parts.fragment}"
    return result


class UrlMatcher:
    """Validates, compiles and evaluates script URL patterns."""

    def __init__(
        self,
        cache_size: int = DEFAULT_CACHE_SIZE,
        max_pattern_length: int = MAX_PATTERN_LENGTH,
    ):
        self.cache_size = cache_size
        self.max_pattern_length = max_pattern_length
        self.logger = logging.getLogger(__name__)
        self._cache: Dict[Tuple[str, str], CompiledPattern] = {}
        self._hits = 0
        self._misses = 0

    def validate(self, pattern: str, kind: str) -> PatternValidation:
        """
        Validate and normalize a URL pattern.

        Args:
            pattern: Raw pattern from the script header.
            kind: One of match, include, exclude.

        Returns:
            PatternValidation with the normalized regex source when valid.
        """
        if kind not in PATTERN_KINDS:
            return PatternValidation(ok=False, error=f"Unknown pattern kind: {kind}")

        if not pattern or not isinstance(pattern, str) or not pattern.strip():
            return PatternValidation(ok=False, error="Pattern must be a non-empty string")

        if len(pattern) > self.max_pattern_length:
            return PatternValidation(
                ok=False,
                error=f"Pattern too long (max {self.max_pattern_length} characters)",
            )

        if contains_redos_shape(pattern):
            return PatternValidation(
                ok=False,
                error="Pattern contains potentially dangerous regex that could cause ReDoS",
            )

        normalized = normalize_pattern(pattern, kind)
        try:
            re.compile(normalized)
        except re.error as e:
            return PatternValidation(ok=False, error=f"Invalid regex pattern: {e}")

        if complexity_class(normalized) == "high":
            return PatternValidation(
                ok=True,
                normalized=normalized,
                warning="Pattern has high complexity and may impact performance",
            )
        return PatternValidation(ok=True, normalized=normalized)

    def compile(self, pattern: str, kind: str) -> Optional[CompiledPattern]:
        """Return the cached compiled pattern, compiling on a miss.

        Invalid patterns are logged and skipped (None), never cached.
        """
        key = (kind, pattern)
        cached = self._cache.get(key)
        if cached is not None:
            self._hits += 1
            return cached
        self._misses += 1

        validation = self.validate(pattern, kind)
        if not validation.ok:
            self.logger.warning(f"Invalid {kind} pattern skipped: {pattern!r} ({validation.error})")
            return None

        compiled = CompiledPattern(
            kind=kind,
            pattern=pattern,
            regex=re.compile(validation.normalized),
            is_wildcard="*" in pattern or "?" in pattern,
            complexity=complexity_class(validation.normalized),
        )

        # Insertion-order eviction: dicts keep insertion order, so the first key is the oldest.
        while self._cache and len(self._cache) >= self.cache_size:
            oldest = next(iter(self._cache))
            del self._cache[oldest]
        self._cache[key] = compiled
        return compiled

    def _first_hit(self, patterns: Iterable[str], kind: str, url: str) -> Optional[str]:
        for pattern in patterns:
            compiled = self.compile(pattern, kind)
            if compiled is not None and compiled.regex.match(url):
                return pattern
        return None

    def matches(self, script: Script, url: str) -> MatchResult:
        """
        Decide whether a script applies to a URL.

        Exclude patterns win over everything, then match, then include.
        """
        started = time.perf_counter()

        def _result(matches: bool, reason: str, pattern: Optional[str] = None) -> MatchResult:
            elapsed = (time.perf_counter() - started) * 1000
            return MatchResult(matches=matches, reason=reason, pattern=pattern, execution_time=elapsed)

        target = _url_for_matching(url)
        if target is None:
            self.logger.debug(f"Unparseable URL for script {script.id}: {url!r}")
            return _result(False, "no_pattern")

        hit = self._first_hit(script.exclude, "exclude", target)
        if hit is not None:
            return _result(False, "exclude", hit)

        hit = self._first_hit(script.matches, "match", target)
        if hit is not None:
            return _result(True, "match", hit)

        hit = self._first_hit(script.include, "include", target)
        if hit is not None:
            return _result(True, "include", hit)

        return _result(False, "no_pattern")

    def matches_any(self, patterns: Iterable[str], url: str, kind: str = "include") -> bool:
        """True if the URL matches any of the given glob patterns."""
        target = _url_for_matching(url)
        if target is None:
            return False
        return self._first_hit(patterns, kind, target) is not None

    def matching_scripts(self, scripts: Iterable[Script], url: str) -> List[Script]:
        """Return the enabled scripts whose patterns apply to the URL."""
        return [s for s in scripts if s.enabled and self.matches(s, url).matches]

    def clear_cache(self) -> None:
        self._cache.clear()
        self._hits = 0
        self._misses = 0
        self.logger.info("Pattern cache cleared")

    def cache_stats(self) -> Dict[str, float]:
        lookups = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": self.cache_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }
