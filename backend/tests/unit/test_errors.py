"""
Unit Tests — error classification
══════════════════════════════════
Coverage targets:
  ✅ status codes: 429 → rate limit, 408/5xx → transient, other 4xx → permanent
  ✅ Retry-After header parsed when present
  ✅ class-name hints for openai / httpx / SQLAlchemy exceptions
  ✅ asyncio timeouts → DependencyTimeoutError
  ✅ PipelineErrors pass through unchanged
  ✅ unknown errors default to transient
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from docflow.core.errors import (
    CircuitOpenError,
    ConfigurationError,
    DependencyTimeoutError,
    PermanentDependencyError,
    PersistenceError,
    RateLimitError,
    TransientDependencyError,
    classify_error,
)


def _named(name: str, message: str = "") -> Exception:
    return type(name, (Exception,), {})(message)


@pytest.mark.unit
class TestStatusCodes:

    @pytest.mark.parametrize(
        "status, expected",
        [
            (429, RateLimitError),
            (408, TransientDependencyError),
            (500, TransientDependencyError),
            (503, TransientDependencyError),
            (400, PermanentDependencyError),
            (401, PermanentDependencyError),
            (422, PermanentDependencyError),
        ],
    )
    def test_http_status(self, http_error, status, expected):
        error = classify_error(http_error(status), dependency="embeddings")
        assert type(error) is expected
        assert error.dependency == "embeddings"
        assert error.retryable is (expected is not PermanentDependencyError)

    def test_retry_after_header(self):
        exc = Exception("slow down")
        exc.response = SimpleNamespace(status_code=429, headers={"retry-after": "7"})
        error = classify_error(exc)
        assert isinstance(error, RateLimitError)
        assert error.retry_after == 7.0

    def test_botocore_style_response(self):
        exc = Exception("S3 failure")
        exc.response = {"ResponseMetadata": {"HTTPStatusCode": 503}}
        assert isinstance(classify_error(exc), TransientDependencyError)

    @pytest.mark.parametrize("pgcode, expected", [("23505", PermanentDependencyError), ("40001", TransientDependencyError)])
    def test_postgres_sqlstate(self, pgcode, expected):
        exc = Exception("db error")
        exc.orig = SimpleNamespace(pgcode=pgcode)
        assert type(classify_error(exc)) is expected


@pytest.mark.unit
class TestClassNames:

    @pytest.mark.parametrize(
        "name", ["APITimeoutError", "APIConnectionError", "ConnectError", "OperationalError"],
    )
    def test_transient_names(self, name):
        assert type(classify_error(_named(name))) is TransientDependencyError

    @pytest.mark.parametrize(
        "name", ["AuthenticationError", "BadRequestError", "IntegrityError", "PermissionDeniedError"],
    )
    def test_permanent_names(self, name):
        assert isinstance(classify_error(_named(name)), PermanentDependencyError)

    def test_vendor_rate_limit_by_name(self):
        assert isinstance(classify_error(_named("RateLimitError", "quota")), RateLimitError)

    def test_asyncio_timeout(self):
        assert isinstance(classify_error(asyncio.TimeoutError()), DependencyTimeoutError)

    def test_message_hint(self):
        assert classify_error(_named("Weird", "ECONNRESET by peer")).retryable

    def test_unknown_defaults_to_transient(self):
        error = classify_error(_named("SomethingOdd", "???"))
        assert type(error) is TransientDependencyError
        assert "SomethingOdd" in str(error)


@pytest.mark.unit
class TestTaxonomy:

    def test_pipeline_errors_pass_through(self):
        original = PersistenceError("failed to save chunks 0-9")
        assert classify_error(original) is original

    def test_circuit_open_is_not_retryable(self):
        error = CircuitOpenError("embeddings", retry_in=42)
        assert not error.retryable
        assert error.user_message == "embeddings is temporarily unavailable (circuit open, retry in 42s)"

    def test_configuration_error_lists_violations(self):
        error = ConfigurationError(["chunk_overlap must be < chunk_size", "max_retries out of range"])
        assert len(error.violations) == 2
        assert str(error).startswith("2 configuration violation(s)")
