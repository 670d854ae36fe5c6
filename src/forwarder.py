"""ResilientForwarder: outbound HTTP with circuit breaker and retry.

``ResilientForwarder.forward()`` sends a ``RequestDescriptor`` to the
upstream API.  A shared ``CircuitBreaker`` gates every call; transient
failures are retried with jittered exponential backoff per ``RetryPolicy``.

Only terminal *retryable* failures count against the breaker.  Permanent
failures (404, a malformed URL) say nothing about upstream health, so they
leave the failure count alone and just free a HALF_OPEN probe slot.
"""

from __future__ import annotations

import asyncio
import json
import logging
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field

import httpx

from src.core.config import Settings
from src.core.errors import (
    ExhaustedRetriesError,
    ForwarderError,
    ForwardTimeoutError,
    UpstreamTransportError,
)
from src.resilience.circuit_breaker import CircuitBreaker
from src.resilience.retry import TIMEOUT, RetryPolicy, classify_transport_error

logger = logging.getLogger(__name__)

SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "HEAD"})
_BODYLESS_METHODS = frozenset({"GET", "HEAD"})


# ── Data classes ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RequestDescriptor:
    """One outbound request, immutable for the whole forward call.

    Attributes:
        url:     Absolute upstream URL.
        method:  One of ``SUPPORTED_METHODS`` (normalised to upper case).
        headers: Headers to send upstream.
        body:    Raw request body; must be ``None`` for GET and HEAD.
    """

    url: str
    method: str = "GET"
    headers: Mapping[str, str] = field(default_factory=dict)
    body: str | bytes | None = None

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("url must be non-empty")
        method = self.method.upper()
        if method not in SUPPORTED_METHODS:
            raise ValueError(f"Unsupported method: {self.method}")
        if method in _BODYLESS_METHODS and self.body is not None:
            raise ValueError(f"{method} requests cannot carry a body")
        object.__setattr__(self, "method", method)
        object.__setattr__(self, "headers", dict(self.headers))

    @classmethod
    def from_payload(
        cls,
        url: str,
        method: str = "GET",
        headers: Mapping[str, str] | None = None,
        body: str | dict | list | None = None,
    ) -> RequestDescriptor:
        """Build a descriptor from a browser payload.

        Bodies on GET/HEAD are dropped; dict/list bodies become JSON text.
        """
        if method.upper() in _BODYLESS_METHODS or body is None:
            encoded = None
        elif isinstance(body, str):
            encoded = body
        else:
            encoded = json.dumps(body)
        return cls(url=url, method=method, headers=headers or {}, body=encoded)


@dataclass
class Attempt:
    """Record of one try: status for HTTP outcomes, error text otherwise."""

    attempt_number: int
    status_code: int | None
    error: str | None
    elapsed_ms: float


@dataclass
class ForwardResult:
    """Upstream response as returned to the caller.

    Attributes:
        status_code: HTTP status code from the upstream API.
        text:        Decoded response body.
        headers:     Response headers as a plain dict.
        elapsed_ms:  Round-trip time of the final attempt in milliseconds.
        attempts:    Every attempt made during the forward call.
    """

    status_code: int
    text: str
    headers: dict
    elapsed_ms: float
    attempts: list[Attempt] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return ""


def default_is_ok(status_code: int) -> bool:
    return status_code < 400


# ── Forwarder ───────────────────────────────────────────────────────────


class ResilientForwarder:
    """Forwards proxy requests upstream with circuit breaker and retry.

    Uses one pooled ``httpx.AsyncClient``.  Time, sleeping and jitter are
    injectable so tests can drive the retry loop without real delays.

    Args:
        settings: Application settings (timeouts, retry and breaker config).
        breaker:  Shared circuit breaker; built from *settings* if omitted.
        policy:   Default retry policy; built from *settings* if omitted.
        client:   Optional pre-built ``httpx.AsyncClient``.
        sleep:    Coroutine function used for backoff delays.
        clock:    Monotonic time source in seconds.
        rng:      Random source for jitter.
        is_ok:    Predicate deciding which statuses count as success.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        breaker: CircuitBreaker | None = None,
        policy: RetryPolicy | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        is_ok: Callable[[int], bool] = default_is_ok,
    ) -> None:
        self._policy = policy or RetryPolicy.from_settings(settings)
        self._breaker = breaker or CircuitBreaker(
            name="ebay-api",
            failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_SECONDS,
            clock=clock,
        )
        self._timeout = settings.REQUEST_TIMEOUT_SECONDS
        self._deadline = settings.FORWARD_DEADLINE_SECONDS
        self._user_agent = settings.PROXY_USER_AGENT
        self._client = client
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._is_ok = is_ok

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _outbound_headers(self, descriptor: RequestDescriptor) -> dict[str, str]:
        headers = dict(descriptor.headers)
        headers["User-Agent"] = self._user_agent
        headers["Accept-Encoding"] = "gzip, deflate"
        return headers

    async def _send(self, descriptor: RequestDescriptor, timeout: float) -> httpx.Response:
        """Send a single request, bounded by *timeout* seconds end to end."""
        request = self._get_client().request(
            descriptor.method,
            descriptor.url,
            headers=self._outbound_headers(descriptor),
            content=descriptor.body,
            timeout=timeout,
        )
        return await asyncio.wait_for(request, timeout)

    def _attempt_timeout(self, give_up_at: float | None) -> float:
        if give_up_at is None:
            return self._timeout
        return min(self._timeout, give_up_at - self._clock())

    def _transport_failure(
        self,
        descriptor: RequestDescriptor,
        exc: Exception,
        policy: RetryPolicy,
        timeout: float,
    ) -> ForwarderError:
        """Translate a transport exception into a classified forwarder error."""
        if isinstance(exc, (TimeoutError, httpx.TimeoutException)):
            return ForwardTimeoutError(
                descriptor.url,
                round(timeout, 3),
                retryable=policy.is_retryable_error(TIMEOUT, "timeout"),
            )
        code = classify_transport_error(exc)
        detail = str(exc) or exc.__class__.__name__
        return UpstreamTransportError(
            descriptor.url,
            detail,
            error_code=code,
            retryable=policy.is_retryable_error(code, detail),
        )

    async def forward(
        self,
        descriptor: RequestDescriptor,
        policy: RetryPolicy | None = None,
        *,
        deadline: float | None = None,
    ) -> ForwardResult:
        """Send *descriptor* upstream, retrying transient failures.

        Args:
            descriptor: The request to forward.
            policy:     Retry policy for this call; defaults to the
                        forwarder's own.
            deadline:   Seconds the whole call may take, retries included.
                        Defaults to ``FORWARD_DEADLINE_SECONDS``.

        Returns:
            The first successful ``ForwardResult``, or the response of a
            non-retryable HTTP failure (e.g. 404) after a single attempt.

        Raises:
            CircuitOpenError: If the breaker rejects the call.
            ExhaustedRetriesError: If every attempt failed transiently.
            ForwardTimeoutError: If the overall deadline ran out.
            UpstreamTransportError: On a non-retryable transport failure.
        """
        policy = policy or self._policy
        if deadline is None:
            deadline = self._deadline
        give_up_at = self._clock() + deadline if deadline is not None else None

        ticket = await self._breaker.pre_check()
        try:
            return await self._attempt_loop(descriptor, policy, deadline, give_up_at, ticket)
        finally:
            # Frees the slot of a probe that ended without a verdict
            await self._breaker.release_probe(ticket)

    async def _attempt_loop(
        self,
        descriptor: RequestDescriptor,
        policy: RetryPolicy,
        deadline: float | None,
        give_up_at: float | None,
        ticket: int | None,
    ) -> ForwardResult:
        attempts: list[Attempt] = []
        last_response: ForwardResult | None = None
        last_error: ForwarderError | None = None

        for index in range(policy.max_retries + 1):
            timeout = self._attempt_timeout(give_up_at)
            if timeout <= 0:
                await self._breaker.on_failure(ticket)
                raise ForwardTimeoutError(descriptor.url, deadline, overall=True)

            start = self._clock()
            try:
                response = await self._send(descriptor, timeout)
            except (httpx.HTTPError, TimeoutError) as exc:
                elapsed_ms = round((self._clock() - start) * 1000, 2)
                failure = self._transport_failure(descriptor, exc, policy, timeout)
                attempts.append(Attempt(index + 1, None, str(failure), elapsed_ms))
                if not failure.retryable:
                    logger.error("Non-retryable transport failure for %s: %s", descriptor.url, failure)
                    raise failure from exc
                last_response, last_error = None, failure
                reason = str(failure)
            else:
                elapsed_ms = round((self._clock() - start) * 1000, 2)
                attempts.append(Attempt(index + 1, response.status_code, None, elapsed_ms))
                result = ForwardResult(
                    status_code=response.status_code,
                    text=response.text,
                    headers=dict(response.headers),
                    elapsed_ms=elapsed_ms,
                    attempts=attempts,
                )
                if self._is_ok(response.status_code):
                    await self._breaker.on_success(ticket)
                    return result
                if not policy.is_retryable_status(response.status_code):
                    logger.info(
                        "Non-retryable status %d from %s, passing through",
                        response.status_code,
                        descriptor.url,
                    )
                    return result
                last_response, last_error = result, None
                reason = f"Retryable status {response.status_code}"

            if index == policy.max_retries:
                break

            delay = policy.delay(index, self._rng) / 1000
            if give_up_at is not None and self._clock() + delay >= give_up_at:
                await self._breaker.on_failure(ticket)
                logger.error("Deadline of %ss reached for %s, abandoning retries", deadline, descriptor.url)
                raise ForwardTimeoutError(descriptor.url, deadline, overall=True)

            logger.warning(
                "%s for %s (attempt %d/%d), retrying in %.2fs",
                reason,
                descriptor.url,
                index + 1,
                policy.max_retries + 1,
                delay,
            )
            await self._sleep(delay)

        await self._breaker.on_failure(ticket)
        exhausted = ExhaustedRetriesError(
            descriptor.url,
            attempts,
            last_response=last_response,
            last_error=last_error,
        )
        logger.error("%s", exhausted)
        if last_error is not None:
            raise exhausted from last_error
        raise exhausted

    async def close(self) -> None:
        """Close the pooled httpx client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
