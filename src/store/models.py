"""
Data store entities.

Rows mirrored from Shopify plus the webhook audit trail:
- Customer, Product, Order, OrderItem: keyed locally by UUID and remotely by
  their Shopify id (unique together with shop_domain)
- WebhookRecord: raw webhook body written before any processing

JSON_FIELDS lists the columns stored as serialized JSON.
"""

from dataclasses import dataclass, field, fields
from typing import Any, ClassVar, Optional


@dataclass
class StoreModel:
    """Common columns and row mapping for store tables."""

    table: ClassVar[str] = ""
    JSON_FIELDS: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def columns(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.columns()}


@dataclass
class Customer(StoreModel):
    table: ClassVar[str] = "customers"

    id: str
    shop_domain: str
    created_at: str
    updated_at: str
    shopify_customer_id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None


@dataclass
class Product(StoreModel):
    table: ClassVar[str] = "products"
    JSON_FIELDS: ClassVar[tuple[str, ...]] = ("metadata",)

    id: str
    shop_domain: str
    created_at: str
    updated_at: str
    shopify_product_id: Optional[str] = None
    title: str = ""
    description: Optional[str] = None
    price: Optional[str] = None
    status: str = "active"
    metadata: dict = field(default_factory=dict)


@dataclass
class Order(StoreModel):
    table: ClassVar[str] = "orders"
    JSON_FIELDS: ClassVar[tuple[str, ...]] = ("metadata",)

    id: str
    shop_domain: str
    created_at: str
    updated_at: str
    shopify_order_id: Optional[str] = None
    order_number: Optional[str] = None
    total_price: str = "0.00"
    currency: str = "USD"
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    status: str = "pending"
    customer_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class OrderItem(StoreModel):
    table: ClassVar[str] = "order_items"
    JSON_FIELDS: ClassVar[tuple[str, ...]] = ("product_metadata",)

    id: str
    order_id: str
    shopify_line_item_id: str
    created_at: str
    updated_at: str
    product_id: Optional[str] = None
    shopify_product_id: Optional[str] = None
    shopify_variant_id: Optional[str] = None
    product_title: str = "Unknown Product"
    product_variant_title: Optional[str] = None
    sku: Optional[str] = None
    quantity: int = 1
    unit_price: str = "0.00"
    total_price: str = "0.00"
    currency: str = "USD"
    discount_amount: str = "0.00"
    tax_amount: str = "0.00"
    product_metadata: dict = field(default_factory=dict)


@dataclass
class WebhookRecord(StoreModel):
    """
    Audit trail of one received webhook.

    `payload` is the raw request body, verbatim. `processed` flips to True
    only after the webhook's reconciliation succeeded.
    """

    table: ClassVar[str] = "webhooks"

    id: str
    topic: str
    shop_domain: str
    payload: str
    created_at: str
    updated_at: str
    processed: bool = False
    processed_at: Optional[str] = None


STORE_MODELS: tuple[type[StoreModel], ...] = (Customer, Product, Order, OrderItem, WebhookRecord)
