"""Tests for URL pattern validation, matching and the pattern cache."""

import pytest

from conftest import make_script
from scriptflow.engine.url_matcher import (
    ALL_URLS_REGEX,
    UrlMatcher,
    complexity_class,
    contains_redos_shape,
    normalize_pattern,
)


class TestValidate:
    """Tests for UrlMatcher.validate."""

    def test_simple_match_pattern(self):
        """A plain wildcard pattern normalizes to an anchored regex."""
        result = UrlMatcher().validate("*://example.com/*", "match")
        assert result.ok
        assert result.normalized == r"^.*://example\.com/.*$"
        assert result.warning is None

    @pytest.mark.parametrize("pattern", ["(a*)*", "(a+)+", "(x|y)*", "(ab){2,}"])
    def test_nested_quantifiers_rejected(self, pattern):
        """Nested quantifier shapes are refused before compilation."""
        result = UrlMatcher().validate(pattern, "include")
        assert not result.ok
        assert "ReDoS" in result.error

    def test_empty_pattern(self):
        """Blank patterns are invalid."""
        assert not UrlMatcher().validate("   ", "match").ok

    def test_too_long(self):
        """Patterns over the length limit are invalid."""
        matcher = UrlMatcher(max_pattern_length=20)
        result = matcher.validate("https://example.com/" + "a" * 20, "match")
        assert not result.ok
        assert "too long" in result.error

    def test_unknown_kind(self):
        """Only match, include and exclude are pattern kinds."""
        assert not UrlMatcher().validate("*://a.com/*", "grant").ok

    def test_high_complexity_warns(self):
        """Very long patterns are accepted with a complexity warning."""
        pattern = "https://example.com/" + "a*" * 60
        result = UrlMatcher(max_pattern_length=5000).validate(pattern, "include")
        assert result.ok
        assert "complexity" in result.warning


class TestNormalize:
    """Tests for normalize_pattern and helpers."""

    def test_all_urls(self):
        assert normalize_pattern("<all_urls>", "match") == ALL_URLS_REGEX

    def test_double_star_and_question_mark(self):
        """** and * both mean any run of characters; ? is one character."""
        assert normalize_pattern("https://a.com/**/x?", "include") == r"^https://a\.com/.*/x.$"

    def test_regex_metacharacters_escaped(self):
        assert normalize_pattern("https://a.com/(x)+", "include") == r"^https://a\.com/\(x\)\+$"

    def test_complexity_classes(self):
        assert complexity_class("^abc$") == "low"
        assert complexity_class("^" + "a" * 120 + "$") == "medium"
        assert complexity_class("^" + ".*" * 80 + "$") == "high"

    def test_redos_shape_detection(self):
        assert contains_redos_shape("(a*)*")
        assert not contains_redos_shape("https://example.com/*")


class TestMatches:
    """Tests for UrlMatcher.matches precedence and reasons."""

    def test_exclude_wins(self):
        """An exclude hit overrides a match hit."""
        script = make_script(matches=["*://ex.com/*"], exclude=["*://ex.com/admin/*"])
        result = UrlMatcher().matches(script, "https://ex.com/admin/x")
        assert result.matches is False
        assert result.reason == "exclude"
        assert result.pattern == "*://ex.com/admin/*"

    def test_match_reason(self):
        script = make_script(matches=["*://ex.com/*"], exclude=["*://ex.com/admin/*"])
        result = UrlMatcher().matches(script, "https://ex.com/home")
        assert result.matches is True
        assert result.reason == "match"

    def test_include_reason(self):
        script = make_script(matches=[], include=["https://docs.ex.com/*"])
        result = UrlMatcher().matches(script, "https://docs.ex.com/guide?page=2")
        assert result.matches is True
        assert result.reason == "include"

    def test_no_pattern(self):
        result = UrlMatcher().matches(make_script(), "https://other.org/")
        assert result.matches is False
        assert result.reason == "no_pattern"

    def test_unparseable_url(self):
        """Invalid URLs never match."""
        result = UrlMatcher().matches(make_script(), "not a url")
        assert result.matches is False
        assert result.reason == "no_pattern"

    def test_bare_origin_gets_root_path(self):
        """A URL without a path is matched as origin + '/'."""
        script = make_script(matches=["https://example.com/"])
        assert UrlMatcher().matches(script, "https://example.com").matches

    def test_port_kept(self):
        script = make_script(matches=["http://localhost:8080/*"])
        assert UrlMatcher().matches(script, "http://localhost:8080/app").matches
        assert not UrlMatcher().matches(script, "http://localhost:9090/app").matches

    def test_invalid_pattern_skipped(self):
        """A rejected pattern is skipped and the next one still applies."""
        script = make_script(matches=["(a*)*", "https://example.com/*"])
        assert UrlMatcher().matches(script, "https://example.com/x").matches

    def test_matching_scripts_skips_disabled(self):
        scripts = [make_script(id="on"), make_script(id="off", enabled=False)]
        found = UrlMatcher().matching_scripts(scripts, "https://example.com/page")
        assert [s.id for s in found] == ["on"]

    def test_matches_any(self):
        matcher = UrlMatcher()
        assert matcher.matches_any(["https://a.com/*", "https://b.com/*"], "https://b.com/x")
        assert not matcher.matches_any(["https://a.com/*"], "https://c.com/x")


class TestCache:
    """Tests for the compiled-pattern cache."""

    def test_hits_and_misses(self):
        matcher = UrlMatcher()
        matcher.compile("https://a.com/*", "match")
        matcher.compile("https://a.com/*", "match")
        stats = matcher.cache_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5

    def test_kind_is_part_of_key(self):
        matcher = UrlMatcher()
        matcher.compile("https://a.com/*", "match")
        matcher.compile("https://a.com/*", "exclude")
        assert matcher.cache_stats()["size"] == 2

    def test_never_exceeds_bound(self):
        """The oldest entry is evicted once the cache is full."""
        matcher = UrlMatcher(cache_size=3)
        for i in range(10):
            matcher.compile(f"https://site{i}.com/*", "match")
            assert matcher.cache_stats()["size"] <= 3
        assert ("match", "https://site9.com/*") in matcher._cache
        assert ("match", "https://site0.com/*") not in matcher._cache

    def test_zero_size_cache_still_compiles(self):
        matcher = UrlMatcher(cache_size=0)
        assert matcher.compile("https://a.com/*", "match") is not None
        assert matcher.compile("https://b.com/*", "match") is not None
        assert matcher.cache_stats()["size"] == 1

    def test_invalid_patterns_not_cached(self):
        matcher = UrlMatcher()
        assert matcher.compile("(a*)*", "match") is None
        assert matcher.cache_stats()["size"] == 0

    def test_clear_cache(self):
        matcher = UrlMatcher()
        matcher.compile("https://a.com/*", "match")
        matcher.clear_cache()
        assert matcher.cache_stats() == {
            "size": 0, "max_size": 1000, "hits": 0, "misses": 0, "hit_rate": 0.0,
        }
