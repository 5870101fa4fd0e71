"""
Pipeline error taxonomy.

Two questions decide how a failure is handled:

  retryable?      → the ResilientCaller retries only when True
  user_message    → what ends up in documents.error_message (never a traceback)

    ConfigurationError          invalid tunables            fatal at startup only
    TransientDependencyError    timeout, 429, 5xx, network  retried, trips breaker
      DependencyTimeoutError    hard timeout elapsed
      RateLimitError            429 (may carry retry_after)
    PermanentDependencyError    4xx, auth, malformed input  fail immediately
    CircuitOpenError            breaker rejected the call   fail fast, not retried
    PersistenceError            storage write failed        not retried
    StuckJobError               raised by the stuck sweep
    ProcessingCancelledError    cancelled at a batch boundary
    EmptyDocumentError          nothing to chunk
    UnreadableDocumentError     corrupt or unparseable file

classify_error() maps third-party exceptions (openai, httpx, botocore,
SQLAlchemy, asyncio) onto this taxonomy by status code and class name, so
callers never import vendor exception types.
"""

from __future__ import annotations

import asyncio
from typing import Optional


class PipelineError(Exception):
    """Base for every error the pipeline raises on purpose."""

    retryable: bool = False
    default_message: str = "processing failed"

    def __init__(self, message: str = "", *, dependency: str = "") -> None:
        super().__init__(message or self.default_message)
        self.dependency = dependency

    @property
    def user_message(self) -> str:
        return str(self)


class ConfigurationError(PipelineError):
    default_message = "invalid configuration"

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        super().__init__(
            f"{len(self.violations)} configuration violation(s): "
            + "; ".join(self.violations)
        )


class TransientDependencyError(PipelineError):
    retryable = True
    default_message = "temporary dependency failure"


class DependencyTimeoutError(TransientDependencyError):
    default_message = "dependency call timed out"


class RateLimitError(TransientDependencyError):
    default_message = "dependency rate limit exceeded"

    def __init__(
        self,
        message: str = "",
        *,
        dependency: str = "",
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, dependency=dependency)
        self.retry_after = retry_after


class PermanentDependencyError(PipelineError):
    default_message = "dependency rejected the request"


class CircuitOpenError(PipelineError):
    default_message = "dependency temporarily unavailable"

    def __init__(self, dependency: str, retry_in: float = 0.0) -> None:
        super().__init__(
            f"{dependency} is temporarily unavailable (circuit open, retry in {retry_in:.0f}s)",
            dependency=dependency,
        )
        self.retry_in = retry_in


class PersistenceError(PipelineError):
    default_message = "failed to save document chunks"


class StuckJobError(PipelineError):
    default_message = "processing timed out"


class ProcessingCancelledError(PipelineError):
    default_message = "processing cancelled"


class EmptyDocumentError(PipelineError):
    default_message = "document contains no extractable text"


class UnreadableDocumentError(PipelineError):
    default_message = "document could not be parsed"


# ---------------------------------------------------------------------------
# Classification of foreign exceptions
# ---------------------------------------------------------------------------

_TRANSIENT_NAME_HINTS = (
    # openai
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    "ServiceUnavailableError",
    # httpx / generic network
    "ConnectTimeout",
    "ReadTimeout",
    "ConnectError",
    "RemoteProtocolError",
    "TimeoutError",
    "ConnectionError",
    "ConnectionResetError",
    "ConnectionRefusedError",
    # SQLAlchemy
    "OperationalError",
    "DisconnectionError",
)

_PERMANENT_NAME_HINTS = (
    "AuthenticationError",
    "OpenAIError",          # client misconfiguration (e.g. missing API key)
    "PermissionDeniedError",
    "BadRequestError",
    "InvalidRequestError",
    "NotFoundError",
    "UnprocessableEntityError",
    "IntegrityError",
    "DataError",
    "ValueError",
    "TypeError",
)

_TRANSIENT_MESSAGE_HINTS = (
    "etimedout", "econnrefused", "enotfound", "econnreset",
    "timeout", "timed out", "temporarily unavailable",
)


def _status_code(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status", "http_status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    # botocore ClientError
    if isinstance(response, dict):
        value = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if isinstance(value, int):
            return value
    return None


def _retry_after(exc: BaseException) -> Optional[float]:
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if not headers:
        return None
    try:
        raw = headers.get("retry-after")
    except AttributeError:
        return None
    try:
        return float(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def classify_error(exc: BaseException, dependency: str = "") -> PipelineError:
    """
    Map any exception onto the pipeline taxonomy.

    PipelineErrors pass through unchanged. Unknown failures are treated as
    transient and stay bounded by the retry budget and the breaker.
    """
    if isinstance(exc, PipelineError):
        return exc

    message = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__

    if isinstance(exc, asyncio.TimeoutError):
        return DependencyTimeoutError(message, dependency=dependency)

    status = _status_code(exc)
    if status is not None:
        if status == 429:
            return RateLimitError(message, dependency=dependency, retry_after=_retry_after(exc))
        if status == 408 or status >= 500:
            return TransientDependencyError(message, dependency=dependency)
        if 400 <= status < 500:
            return PermanentDependencyError(message, dependency=dependency)

    # PostgreSQL SQLSTATE: class 23 = integrity violation, 40/53 = retryable
    pgcode = getattr(getattr(exc, "orig", None), "pgcode", None) or getattr(exc, "pgcode", None)
    if isinstance(pgcode, str):
        if pgcode.startswith("23"):
            return PermanentDependencyError(message, dependency=dependency)
        if pgcode.startswith(("40", "53")):
            return TransientDependencyError(message, dependency=dependency)

    name = type(exc).__name__
    if name == "RateLimitError":
        return RateLimitError(message, dependency=dependency, retry_after=_retry_after(exc))
    if any(name.endswith(hint) for hint in _TRANSIENT_NAME_HINTS):
        return TransientDependencyError(message, dependency=dependency)
    if any(name.endswith(hint) for hint in _PERMANENT_NAME_HINTS):
        return PermanentDependencyError(message, dependency=dependency)

    lowered = str(exc).lower()
    if any(hint in lowered for hint in _TRANSIENT_MESSAGE_HINTS):
        return TransientDependencyError(message, dependency=dependency)

    return TransientDependencyError(message, dependency=dependency)
