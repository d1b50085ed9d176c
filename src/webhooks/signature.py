"""
Shopify webhook signature verification.

Shopify signs the raw request body with the app's shared secret:
    X-Shopify-Hmac-Sha256 = base64(HMAC-SHA256(secret, raw_body))

Verification must run on the exact bytes received, before any JSON parsing.
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional


logger = logging.getLogger(__name__)


def compute_shopify_hmac(raw_body: bytes, secret: str) -> str:
    """Base64-encoded HMAC-SHA256 digest of the raw body."""
    digest = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_shopify_hmac(raw_body: bytes, secret: str, signature: Optional[str]) -> bool:
    """
    Check a webhook signature in constant time.

    Args:
        raw_body: Request body exactly as received
        secret: Shared webhook secret
        signature: X-Shopify-Hmac-Sha256 header value

    Returns:
        True if the signature matches
    """
    if not signature or not secret:
        return False

    expected = compute_shopify_hmac(raw_body, secret)
    valid = hmac.compare_digest(signature.strip().encode("utf-8"), expected.encode("utf-8"))
    if not valid:
        logger.warning("Webhook signature verification failed")
    return valid
