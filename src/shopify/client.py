"""
Shopify Admin REST client.

Thin synchronous wrapper over httpx:
    request(method, path, body) -> decoded JSON, or a JobError on failure

No retries happen here. A failed call inside a processor surfaces as a
structured JobError and the worker pool decides whether to retry the job.
"""

import logging
import os
from typing import Any, Optional

import httpx

from src.queueing.errors import AuthError, NetworkError, ValidationError
from src.queueing.retry_policy import error_from_status


logger = logging.getLogger(__name__)


DEFAULT_API_VERSION = "2025-04"
DEFAULT_TIMEOUT_SECONDS = 30.0
USER_AGENT = "ShopifyJobQueue/1.0"


class ShopifyClient:
    """Shopify Admin API for one store."""

    def __init__(
        self,
        store_url: Optional[str],
        access_token: Optional[str],
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            store_url: Store domain, e.g. "my-shop.myshopify.com"
            access_token: Admin API access token
            api_version: Admin API version segment
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests use httpx.MockTransport)
        """
        self.store_url = (store_url or "").replace("https://", "").rstrip("/")
        self.access_token = access_token
        self.api_version = api_version
        self._client = httpx.Client(
            base_url=f"https://{self.store_url}/admin/api/{api_version}/",
            timeout=timeout,
            transport=transport,
            headers={
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                "X-Shopify-Access-Token": access_token or "",
            },
        )

    @classmethod
    def from_env(cls, transport: Optional[httpx.BaseTransport] = None) -> "ShopifyClient":
        return cls(
            store_url=os.getenv("SHOPIFY_STORE_URL"),
            access_token=os.getenv("SHOPIFY_ACCESS_TOKEN"),
            api_version=os.getenv("SHOPIFY_API_VERSION", DEFAULT_API_VERSION),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.store_url and self.access_token)

    def request(
        self,
        method: str,
        path: str,
        body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> dict:
        """
        Call the Admin API.

        Args:
            method: HTTP method
            path: Path relative to the API root, e.g. "products/1.json"
            body: JSON body
            params: Query parameters

        Returns:
            Decoded JSON body ({} for empty responses)

        Raises:
            AuthError: Missing credentials, 401 or 403
            NotFoundError: 404
            RateLimitedError: 429 (Retry-After kept in context)
            NetworkError: 5xx, timeouts and transport failures
            ValidationError: Other 4xx, or a non-JSON body
        """
        if not self.configured:
            raise AuthError(
                "Shopify credentials not configured",
                code="SHOPIFY_NOT_CONFIGURED",
            )

        path = path.lstrip("/")
        context = {"method": method, "path": path}

        try:
            response = self._client.request(method, path, json=body, params=params)
        except httpx.TimeoutException as e:
            logger.warning(f"Shopify {method} {path} timed out")
            raise NetworkError(f"Shopify request timed out: {e}", code="TIMEOUT", context=context) from e
        except httpx.RequestError as e:
            logger.warning(f"Shopify {method} {path} failed: {e}")
            raise NetworkError(f"Shopify request failed: {e}", context=context) from e

        if not response.is_success:
            logger.warning(f"Shopify {method} {path} returned {response.status_code}")
            raise error_from_status(
                response.status_code,
                f"Shopify API error {response.status_code}: {response.text[:200]}",
                context,
                retry_after=response.headers.get("Retry-After"),
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ValidationError("Shopify returned a non-JSON body", context=context) from e

    def get(self, path: str, params: Optional[dict] = None) -> dict:
        return self.request("GET", path, params=params)

    def post(self, path: str, body: Optional[dict] = None) -> dict:
        return self.request("POST", path, body=body)

    def put(self, path: str, body: Optional[dict] = None) -> dict:
        return self.request("PUT", path, body=body)

    def delete(self, path: str) -> dict:
        return self.request("DELETE", path)

    def get_product(self, product_id: str) -> dict[str, Any]:
        return self.get(f"products/{product_id}.json").get("product", {})

    def list_products(self, limit: int = 250, since_id: Optional[str] = None) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": limit}
        if since_id:
            params["since_id"] = since_id
        return self.get("products.json", params=params).get("products", [])

    def cancel_order(self, order_id: str) -> dict[str, Any]:
        return self.post(f"orders/{order_id}/cancel.json").get("order", {})

    def close(self) -> None:
        self._client.close()
