"""Tests for error classification and recovery policy."""

import logging

import pytest

from conftest import FakeClock
from scriptflow.engine.errors import DEFAULT_POLICIES, ErrorClassifier
from scriptflow.host import HostTimeoutError, ScriptRunError
from scriptflow.schemas import ExecutionContext


def _context(retry_count=0, max_retries=3):
    return ExecutionContext(
        script_id="hello",
        tab_id=1,
        url="https://example.com/",
        timestamp=0,
        run_at="document_idle",
        world="isolated",
        execution_id="exec_hello_1_0_abcd",
        retry_count=retry_count,
        max_retries=max_retries,
    )


class TestClassify:
    """Tests for ErrorClassifier.classify."""

    @pytest.mark.parametrize("message,category", [
        ("SyntaxError: Unexpected token '}'", "validation"),
        ("Refused to evaluate a string: Content Security Policy", "security"),
        ("ReferenceError: foo is not defined", "execution"),
        ("TypeError: x is not a function", "execution"),
        ("Operation timed out", "timeout"),
        ("Permission denied for tab", "permission"),
        ("NetworkError when attempting to fetch resource", "network"),
        ("Failed to fetch", "network"),
        ("JavaScript heap out of memory", "memory"),
        ("Cannot access contents of the page", "host_api"),
        ("something odd happened", "unknown"),
    ])
    def test_messages(self, message, category):
        assert ErrorClassifier().classify(message) == category

    def test_exceptions_include_type_name(self):
        assert ErrorClassifier().classify(HostTimeoutError("after 30000ms")) == "timeout"
        assert ErrorClassifier().classify(ScriptRunError("ReferenceError: x")) == "execution"

    def test_first_category_wins(self):
        """A message matching validation and timeout is classified as validation."""
        assert ErrorClassifier().classify("validation failed: timeout too large") == "validation"

    def test_register_extends_category(self):
        classifier = ErrorClassifier()
        classifier.register("network", [r"socket hang up"])
        assert classifier.classify("socket hang up") == "network"

    def test_register_unknown_category(self):
        with pytest.raises(ValueError, match="Unknown error category"):
            ErrorClassifier().register("cosmic_rays", [r"bit flip"])


class TestHandle:
    """Tests for ErrorClassifier.handle records and logging."""

    def test_record_fields(self):
        clock = FakeClock()
        classifier = ErrorClassifier(clock=clock)
        error = classifier.handle(ScriptRunError("ReferenceError: foo is not defined"), _context(retry_count=1))
        assert error.category == "execution"
        assert error.severity == "medium"
        assert error.retryable
        assert error.script_id == "hello"
        assert error.tab_id == 1
        assert error.retry_count == 1
        assert error.timestamp == clock.now
        assert error.context["execution_id"] == "exec_hello_1_0_abcd"
        assert error.stack is not None

    def test_extra_merged_into_context(self):
        error = ErrorClassifier().handle("validation failed", extra={"script_id": "x", "tab_id": 4})
        assert error.context == {"script_id": "x", "tab_id": 4}
        assert error.script_id == "x"
        assert error.tab_id == 4

    def test_context_wins_over_extra(self):
        error = ErrorClassifier().handle("odd", _context(), extra={"script_id": "x"})
        assert error.script_id == "hello"
        assert error.context["script_id"] == "x"

    def test_without_any_attribution(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="scriptflow.engine.errors"):
            error = ErrorClassifier().handle("odd")
        assert error.script_id is None
        assert "(no context)" in caplog.text

    def test_logged_at_severity(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="scriptflow.engine.errors"):
            ErrorClassifier().handle("Content Security Policy violation")
        assert caplog.records[-1].levelno == logging.ERROR

    def test_queries_and_statistics(self):
        classifier = ErrorClassifier()
        classifier.handle("ReferenceError: a", _context())
        classifier.handle("Failed to fetch", _context())
        classifier.handle("odd")
        assert len(classifier.errors_for_script("hello")) == 2
        assert len(classifier.errors_for_tab(1)) == 2
        stats = classifier.statistics()
        assert stats["total_errors"] == 3
        assert stats["by_category"] == {"execution": 1, "network": 1, "unknown": 1}
        assert stats["recent_errors"] == 3

    def test_bounded_history(self):
        classifier = ErrorClassifier(max_errors=2)
        for i in range(5):
            classifier.handle(f"error {i}")
        assert classifier.statistics()["total_errors"] == 2

    def test_clear_old_errors(self):
        clock = FakeClock()
        classifier = ErrorClassifier(retention_ms=1000, clock=clock)
        classifier.handle("old")
        clock.advance(2000)
        classifier.handle("new")
        assert classifier.clear_old_errors() == 1
        assert classifier.statistics()["total_errors"] == 1


class TestRecovery:
    """Tests for retry decisions."""

    def test_policy_table(self):
        assert DEFAULT_POLICIES["execution"].max_retries == 3
        assert DEFAULT_POLICIES["security"].fallback == "disable_script"
        assert DEFAULT_POLICIES["permission"].fallback == "report"

    def test_retry_until_policy_limit(self):
        classifier = ErrorClassifier()
        assert classifier.should_retry(classifier.handle("ReferenceError: a", _context(retry_count=2)))
        assert not classifier.should_retry(classifier.handle("ReferenceError: a", _context(retry_count=3)))

    def test_context_limit_caps_policy(self):
        classifier = ErrorClassifier()
        error = classifier.handle("ReferenceError: a", _context(retry_count=1, max_retries=1))
        assert not classifier.should_retry(error)

    def test_non_retryable_category(self):
        classifier = ErrorClassifier()
        assert not classifier.should_retry(classifier.handle("Permission denied", _context()))

    def test_retry_delay(self):
        classifier = ErrorClassifier()
        assert classifier.retry_delay(classifier.handle("Failed to fetch", _context())) == 5000
