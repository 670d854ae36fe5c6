"""Maps forwarder outcomes onto the proxy endpoint's HTTP responses.

Status codes:
    400  client input errors (never retried)
    502  transport failures, or an upstream that kept answering 502
    503  circuit breaker open
    *    upstream status passed through for everything else
"""

from __future__ import annotations

import math

from starlette.responses import JSONResponse, Response

from src.core.errors import (
    CircuitOpenError,
    ExhaustedRetriesError,
    StructuredErrorResponse,
)
from src.forwarder import ForwardResult
from src.models.schemas import (
    BadGatewayDiagnostic,
    CircuitOpenResponse,
    GatewayErrorResponse,
)
from src.passthrough import log_account_api_errors, render_body, response_media_type
from src.resilience.circuit_breaker import CircuitBreaker

# Retry-After sent with the expanded 502 diagnostic
BAD_GATEWAY_RETRY_AFTER = 30

_BAD_GATEWAY_CAUSES = [
    "eBay API servers are temporarily overloaded or under maintenance",
    "A load balancer or CDN between the proxy and eBay dropped the request",
    "The request payload triggered an upstream processing failure",
    "Network connectivity problems between the proxy and eBay",
]

_BAD_GATEWAY_STEPS = [
    "Wait 30 seconds and retry the request",
    "Check https://developer.ebay.com/support/api-status for ongoing incidents",
    "Verify the OAuth token is valid and has the scopes this endpoint needs",
    "Reduce request size or frequency if the failure persists",
]


def _dump(model: StructuredErrorResponse) -> dict:
    return model.model_dump(exclude_none=True)


def missing_url_response() -> JSONResponse:
    body = StructuredErrorResponse(
        error="Missing URL parameter",
        message="URL is required for proxy requests",
        retryable=False,
    )
    return JSONResponse(status_code=400, content=_dump(body))


def invalid_request_response(message: str) -> JSONResponse:
    body = StructuredErrorResponse(error="Invalid proxy request", message=message, retryable=False)
    return JSONResponse(status_code=400, content=_dump(body))


def passthrough_response(result: ForwardResult, url: str) -> Response:
    """Return the upstream status and shaped body to the browser."""
    log_account_api_errors(url, result.status_code, result.text)
    headers = {"X-Proxy-Attempts": str(len(result.attempts))}
    retry_after = next(
        (value for key, value in result.headers.items() if key.lower() == "retry-after"),
        None,
    )
    if retry_after:
        headers["Retry-After"] = retry_after
    return Response(
        content=render_body(result.text, result.content_type),
        status_code=result.status_code,
        media_type=response_media_type(url, result.content_type),
        headers=headers,
    )


def circuit_open_response(exc: CircuitOpenError) -> JSONResponse:
    retry_after = max(1, math.ceil(exc.retry_after))
    body = CircuitOpenResponse(
        error="Service temporarily unavailable",
        message=(
            "eBay API requests are paused after repeated failures; "
            f"retry in {retry_after}s"
        ),
        retryable=True,
        retryAfter=retry_after,
    )
    return JSONResponse(
        status_code=503,
        content=_dump(body),
        headers={"Retry-After": str(retry_after)},
    )


def bad_gateway_response(exc: ExhaustedRetriesError, breaker: CircuitBreaker) -> JSONResponse:
    """Expanded diagnostic for an upstream that answered 502 on every attempt."""
    last = exc.last_response
    body = BadGatewayDiagnostic(
        error="Bad Gateway",
        message=f"eBay API returned 502 Bad Gateway on all {len(exc.attempts)} attempts",
        retryable=True,
        attempts=len(exc.attempts),
        url=exc.url,
        possibleCauses=_BAD_GATEWAY_CAUSES,
        troubleshooting=_BAD_GATEWAY_STEPS,
        upstreamPreview=last.text[:500] if last is not None else "",
        circuitBreakerState=breaker.state.value,
    )
    return JSONResponse(
        status_code=502,
        content=_dump(body),
        headers={"Retry-After": str(BAD_GATEWAY_RETRY_AFTER)},
    )


def gateway_error_response(
    exc: Exception,
    breaker: CircuitBreaker,
    *,
    attempts: int | None = None,
) -> JSONResponse:
    """502 envelope for transport failures and anything unexpected."""
    base = StructuredErrorResponse.from_exception(exc)
    body = GatewayErrorResponse(
        error=base.error,
        message=base.message,
        retryable=base.retryable,
        errorCode=getattr(exc, "error_code", None),
        circuitBreakerState=breaker.state.value,
        url=getattr(exc, "url", None),
        attempts=attempts,
    )
    return JSONResponse(status_code=502, content=_dump(body))


def exhausted_response(exc: ExhaustedRetriesError, breaker: CircuitBreaker) -> Response:
    last = exc.last_response
    if last is None:
        return gateway_error_response(
            exc.last_error or exc,
            breaker,
            attempts=len(exc.attempts),
        )
    if last.status_code == 502:
        return bad_gateway_response(exc, breaker)
    return passthrough_response(last, exc.url)


def error_response(exc: Exception, breaker: CircuitBreaker) -> Response:
    """Dispatch any forwarder failure to its response builder."""
    if isinstance(exc, CircuitOpenError):
        return circuit_open_response(exc)
    if isinstance(exc, ExhaustedRetriesError):
        return exhausted_response(exc, breaker)
    return gateway_error_response(exc, breaker)
