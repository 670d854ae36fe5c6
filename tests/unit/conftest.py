"""Shared fixtures: a controllable clock and forwarder factories."""

from __future__ import annotations

import random
from collections.abc import Callable

import httpx
import pytest

from src.core.config import Settings
from src.forwarder import ResilientForwarder
from src.resilience.circuit_breaker import CircuitBreaker


class FakeClock:
    """Monotonic clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def make_forwarder(settings: Settings, clock: FakeClock) -> Callable[..., ResilientForwarder]:
    """Build a forwarder whose upstream is *handler* via ``httpx.MockTransport``."""

    def _make(handler, **kwargs) -> ResilientForwarder:
        breaker = kwargs.pop("breaker", None) or CircuitBreaker(
            "ebay-api",
            failure_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
            recovery_timeout=settings.CIRCUIT_BREAKER_RECOVERY_SECONDS,
            clock=clock,
        )
        return ResilientForwarder(
            kwargs.pop("settings", settings),
            breaker=breaker,
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
            sleep=clock.sleep,
            clock=clock,
            rng=random.Random(1234),
            **kwargs,
        )

    return _make


def sequence_handler(*outcomes):
    """MockTransport handler replaying *outcomes* (status ints or exceptions).

    The last outcome repeats once the sequence is used up.  ``handler.calls``
    holds every ``httpx.Request`` received.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        index = min(len(handler.calls), len(outcomes) - 1)
        handler.calls.append(request)
        outcome = outcomes[index]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json={"status": outcome})

    handler.calls = []
    return handler


@pytest.fixture
def sequence():
    """Factory fixture for ``sequence_handler``."""
    return sequence_handler
