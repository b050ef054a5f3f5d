"""
Tests for the error taxonomy, CLI message templates and transient retries.
"""

import pytest

from brewhouse.core.errors import (
    BuildError,
    BuildToolsError,
    CircularDependencyError,
    DownloadError,
    FormulaUnavailableError,
    IncompatibleBottleError,
    SystemError,
    TransientError,
    UserError,
    format_error_message,
    retry_on_transient,
)


# ── Taxonomy ─────────────────────────────────────────────────────────


class TestTaxonomy:
    def test_families(self):
        assert isinstance(DownloadError(), TransientError)
        assert isinstance(FormulaUnavailableError(formula="x"), UserError)
        assert isinstance(BuildError("x"), SystemError)
        assert isinstance(CircularDependencyError(["a", "b", "a"]), UserError)

    def test_kind_is_class_name(self):
        assert BuildToolsError(["a"]).kind == "BuildToolsError"

    def test_with_context_merges(self):
        error = FormulaUnavailableError(formula="ghost").with_context(dependent="root")

        assert error.context == {"formula": "ghost", "dependent": "root"}
        assert "dependent=root" in str(error)

    def test_build_tools_error_sorts_and_dedupes(self):
        error = BuildToolsError(["zlib", "abc", "zlib"])
        assert error.formulae == ["abc", "zlib"]
        assert error.context["formulae"] == "abc, zlib"


# ── Messages ─────────────────────────────────────────────────────────


class TestFormatErrorMessage:
    def test_specific_template(self):
        message = format_error_message(CircularDependencyError(["a", "b", "a"]))
        assert "a -> b -> a" in message

    def test_falls_back_to_family_template(self):
        message = format_error_message(IncompatibleBottleError("wrong arch"))
        assert message.startswith("⚠️ System error: wrong arch")

    def test_missing_template_keys(self):
        message = format_error_message(BuildError("foo", message="boom", context={}))
        assert "boom" in message


# ── Retries ──────────────────────────────────────────────────────────


class TestRetryOnTransient:
    def test_retries_transient_then_succeeds(self):
        calls = []

        @retry_on_transient(max_retries=3, base_delay=0.0)
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise DownloadError(formula="foo")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_gives_up_after_max_retries(self):
        calls = []

        @retry_on_transient(max_retries=2, base_delay=0.0)
        def broken():
            calls.append(1)
            raise DownloadError(formula="foo")

        with pytest.raises(DownloadError):
            broken()
        assert len(calls) == 2

    def test_user_errors_are_not_retried(self):
        calls = []

        @retry_on_transient(max_retries=3, base_delay=0.0)
        def wrong():
            calls.append(1)
            raise FormulaUnavailableError(formula="foo")

        with pytest.raises(FormulaUnavailableError):
            wrong()
        assert len(calls) == 1

    def test_backoff_between_attempts(self, monkeypatch):
        delays = []
        monkeypatch.setattr("brewhouse.core.errors.time.sleep", delays.append)

        @retry_on_transient(max_retries=3, base_delay=1.0, backoff=2.0)
        def broken():
            raise DownloadError(formula="foo")

        with pytest.raises(DownloadError):
            broken()
        assert delays == [1.0, 2.0]
