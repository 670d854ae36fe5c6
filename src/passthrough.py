"""Shaping of upstream responses for the browser.

Trading API responses are XML and go back untouched.  Everything that
claims to be JSON (or claims nothing) is parsed and re-serialized, so the
browser never receives a body that breaks ``response.json()``; unparseable
content is wrapped in an error envelope instead of failing the request.
"""

from __future__ import annotations

import json
import logging
import re

logger = logging.getLogger(__name__)

TRADING_API_PATH = "/ws/api/eBayAPI.dll"
ACCOUNT_API_PATH = "/sell/account/"

# Maximum upstream text echoed back inside error envelopes
_MAX_RAW_PREVIEW = 500

_AUTH_ERROR_PATTERN = re.compile(r"auth|permission|scope|unauthorized", re.IGNORECASE)


def expected_content_type(url: str) -> str:
    """Content type to assume when the upstream response declares none."""
    if TRADING_API_PATH in url:
        return "text/xml"
    return "application/json"


def is_xml(text: str, content_type: str) -> bool:
    return "xml" in content_type.lower() or text.lstrip().startswith("<?xml")


def render_body(text: str, content_type: str) -> str:
    """Return a browser-safe body for upstream *text*.

    XML and declared non-JSON text pass through verbatim.  JSON (declared or
    undeclared) is re-serialized; parse failures become an error envelope.
    """
    if not text:
        return ""
    if is_xml(text, content_type):
        return text

    lowered = content_type.lower()
    if lowered and "json" not in lowered:
        return text

    try:
        return json.dumps(json.loads(text))
    except ValueError as exc:
        logger.warning("Upstream JSON could not be parsed, returning envelope: %s", exc)
        return json.dumps(
            {
                "error": "Invalid JSON response from upstream API",
                "message": str(exc),
                "rawResponse": text[:_MAX_RAW_PREVIEW],
                "responseLength": len(text),
                "parseError": True,
            }
        )


def response_media_type(url: str, content_type: str) -> str:
    return content_type or expected_content_type(url)


def log_account_api_errors(url: str, status_code: int, text: str) -> list[dict]:
    """Log eBay's ``errors[]`` for a failed Account API call.

    Returns the parsed errors (empty when the body has none or is not JSON).
    Never raises: this only informs the operator.
    """
    if ACCOUNT_API_PATH not in url or status_code < 400:
        return []

    logger.error("Account API error %d for %s: %s", status_code, url, text[:300])
    try:
        data = json.loads(text)
    except ValueError:
        logger.error("Could not parse Account API error response")
        return []

    errors = data.get("errors") if isinstance(data, dict) else None
    if not isinstance(errors, list) or not errors:
        return []

    parsed = [
        {
            "errorId": err.get("errorId"),
            "domain": err.get("domain"),
            "category": err.get("category"),
            "message": err.get("message"),
            "longMessage": err.get("longMessage"),
        }
        for err in errors
        if isinstance(err, dict)
    ]
    for err in parsed:
        logger.error("eBay API error %s (%s): %s", err["errorId"], err["category"], err["message"])

    if any(_AUTH_ERROR_PATTERN.search(f"{err['errorId'] or ''} {err['message'] or ''}") for err in parsed):
        logger.error("Authentication or scope issue detected; token needs the sell.account scope")
    return parsed
