"""Settings for the eBay API proxy.

Centralized configuration for the proxy service.
All settings are loaded from environment variables with the EBAY_PROXY_ prefix.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """eBay proxy configuration.

    All fields can be overridden by environment variables prefixed with
    ``EBAY_PROXY_``.  For example, ``EBAY_PROXY_RETRY_MAX_RETRIES=5`` raises
    the retry budget.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "ebay-proxy"
    SERVICE_VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8888
    LOG_LEVEL: str = "INFO"

    # ── Outbound requests ───────────────────────────────────────────
    REQUEST_TIMEOUT_SECONDS: float = 30.0  # Per-attempt upper bound
    FORWARD_DEADLINE_SECONDS: float | None = None  # Whole-call bound, unset = none
    PROXY_USER_AGENT: str = "EasyFlip-Proxy/1.0"

    # ── Retry policy ────────────────────────────────────────────────
    RETRY_MAX_RETRIES: int = 3
    RETRY_BASE_DELAY_MS: int = 1000
    RETRY_MAX_DELAY_MS: int = 10000
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_JITTER_RATIO: float = 0.25  # ± fraction of the computed delay

    # ── Circuit breaker ─────────────────────────────────────────────
    CIRCUIT_BREAKER_THRESHOLD: int = 5  # Terminal failures before OPEN
    CIRCUIT_BREAKER_RECOVERY_SECONDS: float = 60.0  # Seconds before HALF_OPEN probe

    model_config = {
        "env_prefix": "EBAY_PROXY_",
    }
