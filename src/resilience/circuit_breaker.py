"""Async circuit breaker guarding the upstream eBay APIs.

Implements the standard three-state circuit breaker:

    CLOSED    →  (failure_threshold reached)  →  OPEN
    OPEN      →  (open_until passed)          →  HALF_OPEN
    HALF_OPEN →  (probe succeeds)             →  CLOSED
    HALF_OPEN →  (probe fails)                →  OPEN, fresh window

One instance is shared by every in-flight request in the process.  All
mutations go through an ``asyncio.Lock`` so failure counting and state
transitions are linearizable across concurrent callers.  Time comes from an
injectable ``clock`` so tests can move it without sleeping.

``pre_check()`` hands the HALF_OPEN probe a ticket naming its probe window.
Only a caller holding the current window's ticket can close or re-open the
circuit from HALF_OPEN.  Requests admitted earlier, while CLOSED, may still
finish after a trip; their outcomes only touch the failure count.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum

from src.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Async-safe circuit breaker for a single upstream.

    Args:
        name:               Human-readable upstream name (for logging/errors).
        failure_threshold:  Failures before opening the circuit.
        recovery_timeout:   Seconds the circuit stays OPEN before probing.
        half_open_max:      Max concurrent probes in HALF_OPEN state.
        clock:              Monotonic time source in seconds.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max = half_open_max
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._open_until: float | None = None
        self._half_open_calls = 0
        self._probe_window = 0
        self._lock = asyncio.Lock()

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.total_successes = 0

    # ── Public properties ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        """Return the current state, reporting an expired OPEN as HALF_OPEN.

        The stored state only moves to HALF_OPEN inside ``pre_check``.
        """
        if self._state == CircuitState.OPEN and not self._still_open():
            return CircuitState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def open_until(self) -> float | None:
        return self._open_until

    def _still_open(self) -> bool:
        return self._open_until is not None and self._clock() < self._open_until

    def _holds_probe(self, ticket: int | None) -> bool:
        return (
            ticket is not None
            and self._state == CircuitState.HALF_OPEN
            and ticket == self._probe_window
        )

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._open_until = self._clock() + self.recovery_timeout
        self._half_open_calls = 0
        logger.warning(
            "Circuit '%s' OPEN after %d failures, probing again in %.0fs",
            self.name,
            self._failure_count,
            self.recovery_timeout,
        )

    # ── Core call wrapper ────────────────────────────────────────────

    async def pre_check(self) -> int | None:
        """Check whether a call is allowed; raise if circuit is open.

        Must be called **before** the outbound request.  The first call
        after the open window elapses becomes the HALF_OPEN probe.

        Returns:
            A probe ticket when this call is a HALF_OPEN probe, else ``None``.
            Pass it back to ``on_success``, ``on_failure`` and
            ``release_probe``.
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                if self._still_open():
                    self.total_rejections += 1
                    raise CircuitOpenError(self.name, self._open_until - self._clock())
                self._state = CircuitState.HALF_OPEN
                self._half_open_calls = 0
                self._probe_window += 1
                logger.info("Circuit '%s' HALF_OPEN, admitting probe request", self.name)

            ticket = None
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.half_open_max:
                    self.total_rejections += 1
                    raise CircuitOpenError(self.name, 1.0)
                self._half_open_calls += 1
                ticket = self._probe_window

            self.total_calls += 1
            return ticket

    async def on_success(self, ticket: int | None = None) -> None:
        """Record a successful call; a probe success closes the circuit."""
        async with self._lock:
            self.total_successes += 1
            self._failure_count = 0
            if self._holds_probe(ticket):
                self._state = CircuitState.CLOSED
                self._open_until = None
                self._half_open_calls = 0
                logger.info("Circuit '%s' CLOSED, upstream recovered", self.name)

    async def on_failure(self, ticket: int | None = None) -> None:
        """Record a failed call and open the circuit when warranted."""
        async with self._lock:
            self._failure_count += 1
            self.total_failures += 1

            if self._holds_probe(ticket):
                # Probe failed
                self._trip()
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._trip()

    async def release_probe(self, ticket: int | None) -> None:
        """Free a HALF_OPEN probe slot without judging the upstream.

        Used for outcomes that say nothing about upstream health (client
        errors, unexpected exceptions, cancellation).  No-op unless *ticket*
        is the current window's probe that has not yet been judged.
        """
        if ticket is None:
            return
        async with self._lock:
            if self._holds_probe(ticket) and self._half_open_calls > 0:
                self._half_open_calls -= 1

    async def reset(self) -> None:
        """Force-reset the circuit breaker to CLOSED state."""
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._open_until = None
            self._half_open_calls = 0

    def remaining_open_seconds(self) -> float:
        """Seconds left in the current open window (0 when not open)."""
        if self._state != CircuitState.OPEN or self._open_until is None:
            return 0.0
        return max(0.0, self._open_until - self._clock())

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for health and error bodies."""
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "open_for_seconds": round(self.remaining_open_seconds(), 1),
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "total_successes": self.total_successes,
        }
