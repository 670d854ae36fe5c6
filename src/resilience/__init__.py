"""Resilience patterns: circuit breaker and retry for outbound proxy calls.

Protects the upstream eBay APIs, and the proxy itself, from cascading
failures during an outage.
"""

from src.resilience.circuit_breaker import CircuitBreaker, CircuitState
from src.resilience.retry import RetryPolicy, classify_transport_error

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "RetryPolicy",
    "classify_transport_error",
]
