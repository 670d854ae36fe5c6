"""Tests for the FastAPI app: /health, /ebay-proxy, CORS and request IDs."""

import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from src.core.config import Settings
from src.main import create_app
from src.resilience.circuit_breaker import CircuitBreaker

PROXY = "/ebay-proxy"
BROWSE_URL = "https://api.ebay.com/buy/browse/v1/item_summary/search?q=shirt"
TRADING_URL = "https://api.ebay.com/ws/api/eBayAPI.dll"


@pytest.fixture
async def build_client(make_forwarder):
    """Create an ASGI client whose upstream is served by *handler*."""
    opened = []

    def _build(handler, **kwargs):
        forwarder = make_forwarder(handler, **kwargs)
        app = create_app(Settings(), forwarder=forwarder)
        client = AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver")
        opened.append((client, forwarder))
        return client, forwarder

    yield _build
    for client, forwarder in opened:
        await client.aclose()
        await forwarder.close()


def json_upstream(status: int = 200, payload: dict | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=payload if payload is not None else {"ok": True})

    return handler


class TestHealthEndpoint:
    async def test_health_returns_service_metadata(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "ebay-proxy"
        assert data["version"] == "0.1.0"
        assert data["status"] == "healthy"
        assert data["uptime_seconds"] >= 0
        assert data["circuit_breaker"]["state"] == "closed"

    async def test_health_degraded_when_circuit_open(self, build_client, clock):
        breaker = CircuitBreaker("ebay-api", failure_threshold=1, clock=clock)
        client, forwarder = build_client(json_upstream(), breaker=breaker)
        await forwarder.breaker.on_failure()

        data = (await client.get("/health")).json()
        assert data["status"] == "degraded"
        assert data["circuit_breaker"]["state"] == "open"

    def test_module_level_app(self):
        from fastapi import FastAPI

        from src.main import app

        assert isinstance(app, FastAPI)

    def test_main_without_server_returns_zero(self):
        from src.main import main

        assert main(run_server=False) == 0


class TestMiddleware:
    async def test_preflight_answered_before_routing(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.options(PROXY)
        assert response.status_code == 200
        assert response.text == ""
        assert response.headers["access-control-allow-origin"] == "*"
        assert "X-EBAY-API-CALL-NAME" in response.headers["access-control-allow-headers"]
        assert "DELETE" in response.headers["access-control-allow-methods"]

    async def test_cors_headers_on_errors(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.post(PROXY, json={})
        assert response.headers["access-control-allow-origin"] == "*"

    async def test_request_id_generated(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.get("/health")
        assert len(response.headers["x-request-id"]) == 36

    async def test_client_request_id_preserved(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.get("/health", headers={"X-Request-ID": "client-req-999"})
        assert response.headers["x-request-id"] == "client-req-999"


class TestInputValidation:
    async def test_missing_url(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.post(PROXY, json={"method": "GET"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Missing URL parameter"
        assert body["message"] == "URL is required for proxy requests"
        assert "timestamp" in body

    async def test_empty_body_is_missing_url(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.post(PROXY, content=b"")
        assert response.status_code == 400
        assert response.json()["error"] == "Missing URL parameter"

    async def test_malformed_json(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.post(PROXY, content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid proxy request"

    async def test_unsupported_method(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.post(PROXY, json={"url": BROWSE_URL, "method": "PATCH"})
        assert response.status_code == 400
        assert "method" in response.json()["message"]

    async def test_non_http_url(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.post(PROXY, json={"url": "ftp://example.com/file"})
        assert response.status_code == 400
        assert response.json()["retryable"] is False

    async def test_non_ascii_header_is_client_error(self, build_client):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={})

        client, forwarder = build_client(handler)
        response = await client.post(PROXY, json={"url": BROWSE_URL, "headers": {"X-Note": "café ✓"}})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid proxy request"
        assert "ASCII" in response.json()["message"]
        assert calls == []
        assert forwarder.breaker.total_calls == 0

    async def test_unparseable_url_is_client_error(self, build_client):
        client, _ = build_client(json_upstream())
        response = await client.post(PROXY, json={"url": "https://api.ebay.com:abc/buy/browse/v1"})
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid proxy request"


class TestPassThrough:
    async def test_json_success(self, build_client):
        client, _ = build_client(json_upstream(200, {"total": 3}))
        response = await client.post(PROXY, json={"url": BROWSE_URL})
        assert response.status_code == 200
        assert response.json() == {"total": 3}
        assert response.headers["content-type"].startswith("application/json")
        assert response.headers["x-proxy-attempts"] == "1"
        assert response.headers["access-control-allow-origin"] == "*"

    async def test_xml_returned_raw(self, build_client):
        xml = '<?xml version="1.0" encoding="UTF-8"?><GetUserResponse><Ack>Success</Ack></GetUserResponse>'
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.content
            return httpx.Response(200, content=xml.encode(), headers={"Content-Type": "text/xml"})

        client, _ = build_client(handler)
        response = await client.post(
            PROXY,
            json={
                "url": TRADING_URL,
                "method": "POST",
                "headers": {"X-EBAY-API-CALL-NAME": "GetUser", "X-EBAY-API-SITEID": 0},
                "body": "<GetUserRequest/>",
            },
        )
        assert response.status_code == 200
        assert response.text == xml
        assert "xml" in response.headers["content-type"]
        assert captured["body"] == b"<GetUserRequest/>"

    async def test_get_body_is_dropped(self, build_client):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = request.content
            return httpx.Response(200, json={})

        client, _ = build_client(handler)
        await client.post(PROXY, json={"url": BROWSE_URL, "method": "get", "body": {"ignored": True}})
        assert captured["body"] == b""

    async def test_object_body_sent_as_json(self, build_client):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"created": True})

        client, _ = build_client(handler)
        response = await client.post(PROXY, json={"url": BROWSE_URL, "method": "PUT", "body": {"sku": "A1"}})
        assert response.status_code == 201
        assert captured["body"] == {"sku": "A1"}

    async def test_permanent_error_passed_through(self, build_client):
        client, forwarder = build_client(json_upstream(404, {"errors": [{"errorId": 11001}]}))
        response = await client.post(PROXY, json={"url": BROWSE_URL})
        assert response.status_code == 404
        assert response.json() == {"errors": [{"errorId": 11001}]}
        assert forwarder.breaker.failure_count == 0

    async def test_invalid_upstream_json_gets_envelope(self, build_client):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"{truncated", headers={"Content-Type": "application/json"})

        client, _ = build_client(handler)
        response = await client.post(PROXY, json={"url": BROWSE_URL})
        assert response.status_code == 200
        body = response.json()
        assert body["parseError"] is True
        assert body["rawResponse"] == "{truncated"

    async def test_exhausted_429_keeps_retry_after(self, build_client):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, json={"error": "slow down"}, headers={"Retry-After": "12"})

        client, _ = build_client(handler)
        response = await client.post(PROXY, json={"url": BROWSE_URL})
        assert response.status_code == 429
        assert response.headers["retry-after"] == "12"
        assert response.headers["x-proxy-attempts"] == "4"


class TestFailures:
    async def test_upstream_502_gets_diagnostic(self, build_client):
        client, _ = build_client(json_upstream(502, {"error": "bad gateway"}))
        response = await client.post(PROXY, json={"url": BROWSE_URL})
        assert response.status_code == 502
        assert response.headers["retry-after"] == "30"
        body = response.json()
        assert body["error"] == "Bad Gateway"
        assert body["attempts"] == 4
        assert body["possibleCauses"]
        assert body["troubleshooting"]
        assert body["retryable"] is True
        assert "bad gateway" in body["upstreamPreview"]

    async def test_transport_failure_envelope(self, build_client):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadError("Connection reset by peer")

        client, _ = build_client(handler)
        response = await client.post(PROXY, json={"url": BROWSE_URL})
        assert response.status_code == 502
        body = response.json()
        assert body["error"] == "Gateway error"
        assert body["errorCode"] == "connection-reset"
        assert body["retryable"] is True
        assert body["circuitBreakerState"] == "closed"
        assert body["attempts"] == 4
        assert "timestamp" in body

    async def test_unclassified_transport_failure_omits_error_code(self, build_client):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.UnsupportedProtocol("unsupported scheme")

        client, _ = build_client(handler)
        response = await client.post(PROXY, json={"url": BROWSE_URL})
        assert response.status_code == 502
        body = response.json()
        assert "errorCode" not in body
        assert body["retryable"] is False

    async def test_circuit_open_returns_503(self, build_client, clock):
        breaker = CircuitBreaker("ebay-api", failure_threshold=1, recovery_timeout=60.0, clock=clock)
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503)

        client, _ = build_client(handler, breaker=breaker)
        first = await client.post(PROXY, json={"url": BROWSE_URL})
        assert first.status_code == 503
        calls_before = len(calls)

        clock.advance(10.5)
        response = await client.post(PROXY, json={"url": BROWSE_URL})
        assert response.status_code == 503
        assert len(calls) == calls_before
        body = response.json()
        assert body["retryAfter"] == 50
        assert response.headers["retry-after"] == "50"
        assert body["error"] == "Service temporarily unavailable"
