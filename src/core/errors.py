"""Forwarder exception hierarchy and structured error bodies.

Every failure the resilient forwarder surfaces derives from
``ForwarderError``.  The HTTP layer maps each subclass onto a status code
and a JSON envelope; ``StructuredErrorResponse`` is the common shape.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from src.forwarder import Attempt, ForwardResult


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp used in every error envelope."""
    return datetime.now(UTC).isoformat()


class ForwarderError(Exception):
    """Base exception for all proxy forwarding errors."""

    retryable: bool = False


class CircuitOpenError(ForwarderError):
    """Raised when the circuit breaker rejects a call without sending it.

    Attributes:
        backend_name: Name of the breaker that rejected the call.
        retry_after:  Seconds until the breaker admits a probe request.
    """

    retryable = True

    def __init__(self, backend_name: str, retry_after: float) -> None:
        self.backend_name = backend_name
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit open for '{backend_name}', retry after {self.retry_after:.1f}s")


class ForwardTimeoutError(ForwarderError):
    """Raised when an attempt or the whole call exceeds its time bound.

    ``overall`` is True when the caller-imposed deadline ran out, False for a
    single attempt hitting the per-request timeout.
    """

    retryable = True
    error_code = "timeout"

    def __init__(
        self,
        url: str,
        timeout_seconds: float,
        *,
        overall: bool = False,
        retryable: bool = True,
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.overall = overall
        self.retryable = retryable
        scope = "Forward deadline" if overall else "Request"
        super().__init__(f"{scope} to {url} timed out after {timeout_seconds}s")


class UpstreamTransportError(ForwarderError):
    """Raised when the downstream API could not be reached or answered badly.

    Attributes:
        url:        Target URL of the failed request.
        detail:     Message from the underlying transport error.
        error_code: Classified code (``connection-reset``, ``dns-not-found``,
                    ...) or ``None`` when unclassified.
        retryable:  Whether the retry policy treats this failure as transient.
    """

    def __init__(
        self,
        url: str,
        detail: str,
        *,
        error_code: str | None = None,
        retryable: bool = False,
    ) -> None:
        self.url = url
        self.detail = detail
        self.error_code = error_code
        self.retryable = retryable
        super().__init__(f"Upstream request to {url} failed: {detail}")


class ExhaustedRetriesError(ForwarderError):
    """Raised when every allowed attempt ended in a retryable failure.

    Carries the last HTTP response (``last_response``) when the final attempt
    got one, otherwise the last transport error (``last_error``).
    """

    retryable = True

    def __init__(
        self,
        url: str,
        attempts: list[Attempt],
        *,
        last_response: ForwardResult | None = None,
        last_error: ForwarderError | None = None,
    ) -> None:
        self.url = url
        self.attempts = attempts
        self.last_response = last_response
        self.last_error = last_error
        if last_response is not None:
            reason = f"HTTP {last_response.status_code}"
        else:
            reason = str(last_error)
        super().__init__(f"All {len(attempts)} attempts to {url} failed ({reason})")

    @property
    def error_code(self) -> str | None:
        return getattr(self.last_error, "error_code", None)


class StructuredErrorResponse(BaseModel):
    """Common JSON error envelope: ``{"error", "message", "timestamp", ...}``."""

    error: str
    message: str
    timestamp: str = Field(default_factory=utc_timestamp)
    retryable: bool | None = None

    @classmethod
    def from_exception(cls, exc: Exception) -> StructuredErrorResponse:
        """Create from an exception, mapping to a short error title.

        Never leaks internal details for unhandled exceptions.
        """
        if isinstance(exc, CircuitOpenError):
            return cls(error="Service temporarily unavailable", message=str(exc), retryable=True)
        if isinstance(exc, ForwardTimeoutError):
            return cls(error="Gateway timeout", message=str(exc), retryable=True)
        if isinstance(exc, ForwarderError):
            return cls(error="Gateway error", message=str(exc), retryable=exc.retryable)
        # Unhandled: never expose internal details
        return cls(
            error="Gateway error",
            message="Failed to proxy request to upstream API",
            retryable=False,
        )
