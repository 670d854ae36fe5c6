"""FastAPI application entrypoint for the eBay API proxy.

Provides the ``/ebay-proxy`` forwarding endpoint, a ``/health`` endpoint
reporting circuit breaker state, permissive CORS for the browser app, and
request-ID middleware.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from pydantic import ValidationError

from src.core.config import Settings
from src.core.errors import ForwarderError
from src.forwarder import ResilientForwarder
from src.models.schemas import HealthResponse, ProxyRequest
from src.proxy_responses import (
    error_response,
    invalid_request_response,
    missing_url_response,
    passthrough_response,
)
from src.resilience.circuit_breaker import CircuitState

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, X-EBAY-API-COMPATIBILITY-LEVEL, "
        "X-EBAY-API-DEV-NAME, X-EBAY-API-APP-NAME, X-EBAY-API-CERT-NAME, "
        "X-EBAY-API-CALL-NAME, X-EBAY-API-SITEID, X-EBAY-C-MARKETPLACE-ID, "
        "X-EBAY-API-REQUEST-ENCODING"
    ),
    "Access-Control-Allow-Methods": "GET, POST, PUT, DELETE, OPTIONS",
}


def _validation_message(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


def create_app(
    settings: Settings | None = None,
    forwarder: ResilientForwarder | None = None,
) -> FastAPI:
    """Build the proxy app around one shared forwarder and circuit breaker."""
    settings = settings or Settings()
    forwarder = forwarder or ResilientForwarder(settings)
    logging.getLogger("src").setLevel(settings.LOG_LEVEL.upper())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await forwarder.close()

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.forwarder = forwarder
    app.state.start_time = time.monotonic()

    # ── Middleware chain ────────────────────────────────────────────────
    # Starlette add_middleware prepends, so LAST added = OUTERMOST.
    # Order: RequestID → CORS → [handler]

    @app.middleware("http")
    async def cors_middleware(request: Request, call_next) -> Response:
        """Answer preflight before any other logic; tag every response."""
        if request.method == "OPTIONS":
            return Response(status_code=200, headers=CORS_HEADERS)
        response = await call_next(request)
        response.headers.update(CORS_HEADERS)
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign or preserve a unique request ID on every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request) -> HealthResponse:
        """Return service health, uptime, and circuit breaker state."""
        breaker = request.app.state.forwarder.breaker
        return HealthResponse(
            service=settings.SERVICE_NAME,
            version=settings.SERVICE_VERSION,
            status="healthy" if breaker.state == CircuitState.CLOSED else "degraded",
            uptime_seconds=round(time.monotonic() - request.app.state.start_time, 2),
            circuit_breaker=breaker.snapshot(),
        )

    @app.post("/ebay-proxy")
    async def ebay_proxy(request: Request) -> Response:
        """Forward a ``{url, method, headers, body}`` descriptor upstream."""
        active: ResilientForwarder = request.app.state.forwarder

        raw = await request.body()
        try:
            payload = json.loads(raw) if raw else {}
        except ValueError as exc:
            return invalid_request_response(f"Request body is not valid JSON: {exc}")

        if not isinstance(payload, dict) or not payload.get("url"):
            logger.error("No URL provided in proxy request")
            return missing_url_response()

        try:
            proxy_request = ProxyRequest.model_validate(payload)
        except ValidationError as exc:
            return invalid_request_response(_validation_message(exc))

        descriptor = proxy_request.to_descriptor()
        logger.info(
            "Proxying %s %s (%d headers)",
            descriptor.method,
            descriptor.url,
            len(descriptor.headers),
        )

        try:
            result = await active.forward(descriptor)
        except ForwarderError as exc:
            logger.warning("Proxy request to %s failed: %s", descriptor.url, exc)
            return error_response(exc, active.breaker)
        except Exception as exc:
            logger.exception("Unexpected proxy failure for %s", descriptor.url)
            return error_response(exc, active.breaker)

        return passthrough_response(result, descriptor.url)

    return app


app = create_app()


def main(run_server: bool = True) -> int:
    """Serve the proxy with uvicorn on the configured host and port."""
    settings: Settings = app.state.settings
    if run_server:
        uvicorn.run(app, host=settings.HOST, port=settings.PORT)  # pragma: no cover
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
