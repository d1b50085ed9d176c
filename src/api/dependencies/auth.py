"""
API key guard for the queue operations endpoints.

The /queues routes can pause queues, purge history and expose job payloads,
so they are closed behind a shared key once API_AUTH_ENABLED=true. /health
stays open for load balancers, and Shopify webhooks authenticate by HMAC
signature instead (see src.webhooks.signature).

Rejected requests are logged with the route and a short fingerprint of the
presented key; the key itself is never written to the log.
"""

import hashlib
import hmac
import logging
import os
from typing import Optional

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader


logger = logging.getLogger(__name__)

API_AUTH_ENABLED = os.getenv("API_AUTH_ENABLED", "false").lower() == "true"
API_KEY = os.getenv("API_KEY", "")

api_key_header = APIKeyHeader(
    name="X-API-Key",
    auto_error=False,
    description="Operator key for queue operations (required when API_AUTH_ENABLED=true)",
)


def key_fingerprint(api_key: str) -> str:
    """First 8 hex chars of the key's SHA-256, for correlating rejected calls."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:8]


def _reject(request: Request, detail: str, reason: str) -> HTTPException:
    client = request.client.host if request.client else "unknown"
    logger.warning(
        f"Queue API request rejected: {reason} | method={request.method} "
        f"path={request.url.path} client={client}"
    )
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "ApiKey"},
    )


async def verify_api_key(
    request: Request,
    api_key: Optional[str] = Security(api_key_header),
) -> Optional[str]:
    """
    Check the X-API-Key header against API_KEY.

    With no API_KEY configured every key is rejected, so enabling auth
    without a key locks the queue API rather than opening it.

    Raises:
        HTTPException: 401 if auth enabled and key is missing/invalid

    Returns:
        The API key if valid, None if auth disabled
    """
    if not API_AUTH_ENABLED:
        return None

    if not api_key:
        raise _reject(
            request,
            "Missing API key. Queue operations require the X-API-Key header.",
            "no key",
        )

    if not API_KEY:
        raise _reject(request, "Invalid API key for queue operations", "API_KEY not configured")

    if not hmac.compare_digest(api_key.encode("utf-8"), API_KEY.encode("utf-8")):
        raise _reject(
            request,
            "Invalid API key for queue operations",
            f"key mismatch (fingerprint={key_fingerprint(api_key)})",
        )

    return api_key
