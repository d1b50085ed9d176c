"""Shopify Admin API client."""

from .client import ShopifyClient, DEFAULT_API_VERSION

__all__ = ["ShopifyClient", "DEFAULT_API_VERSION"]
