"""Retry policy: exponential backoff with jitter and failure classification."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

import httpx

from src.core.config import Settings

# Transport error codes the proxy recognises
CONNECTION_RESET = "connection-reset"
TIMEOUT = "timeout"
DNS_NOT_FOUND = "dns-not-found"

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "no address associated",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry configuration.

    Attributes:
        max_retries:            Retries after the first attempt.
        base_delay_ms:          Delay before the first retry, before jitter.
        max_delay_ms:           Upper clamp for the un-jittered delay.
        backoff_multiplier:     Growth factor per attempt.
        jitter_ratio:           Uniform jitter band as a fraction of the delay.
        retryable_status_codes: Downstream statuses treated as transient.
        retryable_error_codes:  Transport error codes treated as transient.
        retryable_keywords:     Message fragments marking a transport error
                                as transient when it has no known code.
    """

    max_retries: int = 3
    base_delay_ms: float = 1000
    max_delay_ms: float = 10000
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.25
    retryable_status_codes: frozenset[int] = field(
        default_factory=lambda: frozenset({502, 503, 504, 408, 429})
    )
    retryable_error_codes: frozenset[str] = field(
        default_factory=lambda: frozenset({CONNECTION_RESET, TIMEOUT, DNS_NOT_FOUND})
    )
    retryable_keywords: tuple[str, ...] = ("timeout", "network", "connection", "gateway")

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if not 0 <= self.jitter_ratio < 1:
            raise ValueError("jitter_ratio must be in [0, 1)")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay_ms=settings.RETRY_BASE_DELAY_MS,
            max_delay_ms=settings.RETRY_MAX_DELAY_MS,
            backoff_multiplier=settings.RETRY_BACKOFF_MULTIPLIER,
            jitter_ratio=settings.RETRY_JITTER_RATIO,
        )

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay in ms after the 0-based *attempt* failed."""
        return min(self.base_delay_ms * self.backoff_multiplier**attempt, self.max_delay_ms)

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Jittered delay in ms, uniform within ±jitter_ratio of ``base_delay``."""
        base = self.base_delay(attempt)
        spread = base * self.jitter_ratio
        uniform = (rng or random).uniform(-spread, spread)
        return max(0.0, base + uniform)

    def is_retryable_status(self, status_code: int) -> bool:
        return status_code in self.retryable_status_codes

    def is_retryable_error(self, error_code: str | None, message: str) -> bool:
        if error_code is not None and error_code in self.retryable_error_codes:
            return True
        lowered = message.lower()
        return any(keyword in lowered for keyword in self.retryable_keywords)


def classify_transport_error(exc: httpx.HTTPError) -> str | None:
    """Map an httpx exception onto a transport error code.

    Returns ``None`` for errors with no recognised code; the keyword
    heuristics in ``RetryPolicy.is_retryable_error`` still apply to those.
    """
    if isinstance(exc, httpx.TimeoutException):
        return TIMEOUT
    message = str(exc).lower()
    if isinstance(exc, httpx.ConnectError):
        if any(marker in message for marker in _DNS_MARKERS):
            return DNS_NOT_FOUND
        if "reset" in message:
            return CONNECTION_RESET
        return None
    if isinstance(exc, (httpx.ReadError, httpx.WriteError, httpx.RemoteProtocolError)):
        return CONNECTION_RESET
    return None
