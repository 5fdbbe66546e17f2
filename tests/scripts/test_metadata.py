"""Tests for userscript header parsing and script id validation."""

import pytest

from scriptflow.scripts.metadata import (
    ScriptValidationError,
    is_header_pattern_valid,
    is_require_allowed,
    load_userscript,
    parse_userscript,
    slugify,
    validate_name,
)


FULL_SCRIPT = """// ==UserScript==
// @name         Cart Helper
// @namespace    https://example.com/ns
// @version      2.1.0
// @description  Highlights the checkout button
// @author       Ada
// @match        https://shop.example.com/*
// @include      https://*.shop.example.com/cart*
// @exclude      https://shop.example.com/admin/*
// @require      https://cdn.jsdelivr.net/npm/lodash@4/lodash.min.js
// @grant        GM_addStyle
// @run-at       document-end
// @noframes
// ==/UserScript==

document.querySelector('#checkout').style.outline = '2px solid red';
"""


def _script(*directives):
    header = "\n".join(f"// @{d}" for d in directives)
    return f"// ==UserScript==\n{header}\n// ==/UserScript==\nconsole.log(1);\n"


class TestValidateName:
    """Tests for validate_name function."""

    def test_valid_names(self):
        """Valid script ids should pass validation."""
        for name in ["cart-helper", "a", "a-b-c", "test123", "my-script-2026"]:
            validate_name(name)  # Should not raise

    def test_empty_name(self):
        """Empty id should raise error."""
        with pytest.raises(ScriptValidationError, match="cannot be empty"):
            validate_name("")

    def test_path_traversal_double_dot(self):
        """Path traversal with .. should be rejected."""
        with pytest.raises(ScriptValidationError, match="path traversal"):
            validate_name("../etc/passwd")

    def test_path_separators(self):
        """Path separators should be rejected."""
        with pytest.raises(ScriptValidationError, match="path separators"):
            validate_name("foo/bar")

        with pytest.raises(ScriptValidationError, match="path separators"):
            validate_name("foo\\bar")

    def test_dots(self):
        """Dots should be rejected."""
        with pytest.raises(ScriptValidationError, match="dots not allowed"):
            validate_name("cart.user.js")

    def test_uppercase_underscores_spaces(self):
        """Anything outside [a-z0-9-] should be rejected."""
        for name in ["CartHelper", "cart_helper", "cart helper"]:
            with pytest.raises(ScriptValidationError, match="lowercase alphanumeric"):
                validate_name(name)


class TestSlugify:
    """Tests for deriving ids from display names."""

    def test_slug(self):
        assert slugify("Cart Helper") == "cart-helper"
        assert slugify("  GitHub: Dark++ Mode! ") == "github-dark-mode"

    def test_empty_slug(self):
        assert slugify("!!!") == "script"


class TestHeaderChecks:
    """Tests for @match/@include and @require screening."""

    def test_patterns(self):
        assert is_header_pattern_valid("https://example.com/*")
        assert is_header_pattern_valid("*://*/*")
        assert is_header_pattern_valid("<all_urls>")
        assert not is_header_pattern_valid("example.com/*")
        assert not is_header_pattern_valid("chrome://settings/*")
        assert not is_header_pattern_valid("https://a.com/<script>")
        assert not is_header_pattern_valid("https://a.com/" + "x" * 600)

    def test_require_allow_list(self):
        assert is_require_allowed("https://cdn.jsdelivr.net/npm/x.js")
        assert is_require_allowed("https://ajax.cdnjs.cloudflare.com/x.js")
        assert not is_require_allowed("http://cdn.jsdelivr.net/npm/x.js")
        assert not is_require_allowed("https://evil.example/x.js")
        assert not is_require_allowed("https://cdn.jsdelivr.net.evil.example/x.js")


class TestParseUserscript:
    """Tests for parse_userscript function."""

    def test_full_header(self):
        """Every supported directive should be read."""
        script = parse_userscript(FULL_SCRIPT)
        assert script.id == "cart-helper"
        assert script.name == "Cart Helper"
        assert script.namespace == "https://example.com/ns"
        assert script.version == "2.1.0"
        assert script.description == "Highlights the checkout button"
        assert script.author == "Ada"
        assert script.matches == ["https://shop.example.com/*"]
        assert script.include == ["https://*.shop.example.com/cart*"]
        assert script.exclude == ["https://shop.example.com/admin/*"]
        assert script.requires == ["https://cdn.jsdelivr.net/npm/lodash@4/lodash.min.js"]
        assert script.grants == ["GM_addStyle"]
        assert script.run_at == "document_end"
        assert script.noframes is True
        assert script.code == FULL_SCRIPT

    def test_explicit_id(self):
        """An explicit id should override the slug of @name."""
        assert parse_userscript(FULL_SCRIPT, "helper").id == "helper"

    def test_invalid_explicit_id(self):
        """An explicit id must still be a valid script id."""
        with pytest.raises(ScriptValidationError, match="lowercase alphanumeric"):
            parse_userscript(FULL_SCRIPT, "Helper_1")

    def test_defaults(self):
        """Missing optional directives should fall back to defaults."""
        script = parse_userscript(_script("name Minimal", "match https://a.com/*"))
        assert script.version == "1.0.0"
        assert script.run_at == "document_idle"
        assert script.world == "isolated"
        assert script.noframes is False
        assert script.grants == []

    def test_invalid_values_ignored(self, caplog):
        """Bad patterns, grants, requires, versions and run-at values are dropped."""
        script = parse_userscript(_script(
            "name Picky",
            "match https://a.com/*",
            "match javascript:alert(1)",
            "grant GM_evil",
            "require https://evil.example/x.js",
            "version v2",
            "run-at whenever",
        ))
        assert script.matches == ["https://a.com/*"]
        assert script.grants == []
        assert script.requires == []
        assert script.version == "1.0.0"
        assert script.run_at == "document_idle"
        assert "Invalid @grant value ignored" in caplog.text

    def test_long_fields_truncated(self):
        script = parse_userscript(_script("name Long", "match https://a.com/*", "description " + "d" * 300))
        assert len(script.description) == 200

    def test_missing_header(self):
        """Source without a header block should be rejected."""
        with pytest.raises(ScriptValidationError, match="missing ==UserScript== block"):
            parse_userscript("console.log(1);")

    def test_missing_name(self):
        with pytest.raises(ScriptValidationError, match="must have @name"):
            parse_userscript(_script("match https://a.com/*"))

    def test_missing_patterns(self):
        """Exclude-only scripts have nowhere to run."""
        with pytest.raises(ScriptValidationError, match="@match or @include"):
            parse_userscript(_script("name Nowhere", "exclude https://a.com/*"))


class TestLoadUserscript:
    """Tests for load_userscript function."""

    def test_load_from_file(self, tmp_path):
        """Should parse a .user.js file from disk."""
        path = tmp_path / "cart.user.js"
        path.write_text(FULL_SCRIPT)
        script = load_userscript(path)
        assert script.id == "cart-helper"
        assert script.code == FULL_SCRIPT

    def test_missing_file(self, tmp_path):
        """Should raise error if the file does not exist."""
        with pytest.raises(ScriptValidationError, match="userscript not found"):
            load_userscript(tmp_path / "nope.user.js")

    def test_invalid_file(self, tmp_path):
        """Parse errors should surface from files too."""
        path = tmp_path / "plain.js"
        path.write_text("alert(1);")
        with pytest.raises(ScriptValidationError, match="missing ==UserScript=="):
            load_userscript(path)
