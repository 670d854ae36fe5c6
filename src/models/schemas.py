"""Request and response models for the proxy endpoint.

``ProxyRequest`` validates the browser's JSON descriptor; the error models
extend ``StructuredErrorResponse`` with the fields each failure adds.
"""

from __future__ import annotations

from typing import Any

import httpx
from pydantic import BaseModel, Field, field_validator

from src.core.errors import StructuredErrorResponse
from src.forwarder import SUPPORTED_METHODS, RequestDescriptor


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    service: str
    version: str
    status: str
    uptime_seconds: float
    circuit_breaker: dict


class ProxyRequest(BaseModel):
    """Body of POST /ebay-proxy."""

    url: str = Field(..., min_length=1, max_length=8192)
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | dict | list | None = None

    @field_validator("url")
    @classmethod
    def require_http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must be an absolute http(s) URL")
        try:
            httpx.URL(v)
        except httpx.InvalidURL as exc:
            raise ValueError(f"url is malformed: {exc}") from exc
        return v

    @field_validator("method", mode="before")
    @classmethod
    def normalise_method(cls, v: Any) -> str:
        if not isinstance(v, str) or v.upper() not in SUPPORTED_METHODS:
            raise ValueError(f"method must be one of {sorted(SUPPORTED_METHODS)}")
        return v.upper()

    @field_validator("headers", mode="before")
    @classmethod
    def stringify_headers(cls, v: Any) -> Any:
        # Browsers send numeric header values (e.g. X-EBAY-API-SITEID: 0)
        if not isinstance(v, dict):
            return v
        headers = {str(key): str(value) for key, value in v.items() if value is not None}
        for key, value in headers.items():
            # httpx encodes header names and values as ASCII
            if not (key.isascii() and value.isascii()):
                raise ValueError(f"header {key!r} must contain only ASCII characters")
        return headers

    def to_descriptor(self) -> RequestDescriptor:
        return RequestDescriptor.from_payload(self.url, self.method, self.headers, self.body)


class CircuitOpenResponse(StructuredErrorResponse):
    """503 body while the circuit breaker is open."""

    retryAfter: int


class GatewayErrorResponse(StructuredErrorResponse):
    """502 body for transport-level failures."""

    errorCode: str | None = None
    circuitBreakerState: str
    url: str | None = None
    attempts: int | None = None


class BadGatewayDiagnostic(StructuredErrorResponse):
    """Expanded 502 body when the upstream itself kept answering 502."""

    status: int = 502
    attempts: int
    url: str
    possibleCauses: list[str]
    troubleshooting: list[str]
    upstreamPreview: str = ""
    circuitBreakerState: str
