"""
Data Store Module.

Local mirror of Shopify customers, products, orders and order items, plus
the webhook audit trail, persisted in SQLite.
"""

from .models import Customer, Product, Order, OrderItem, WebhookRecord, StoreModel
from .persistence import StoreAdapter, StoreSession, create_store

__all__ = [
    "Customer",
    "Product",
    "Order",
    "OrderItem",
    "WebhookRecord",
    "StoreModel",
    "StoreAdapter",
    "StoreSession",
    "create_store",
]
