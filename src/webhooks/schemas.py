"""
Shopify webhook payload schemas.

Only the fields reconciliation reads are declared; everything else Shopify
sends is kept (extra="allow") so the raw payload survives validation.
Remote ids arrive as integers and are normalized to strings.
"""

from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


RemoteId = Union[int, str]


def _id_to_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class ShopifyModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class AddressPayload(ShopifyModel):
    address1: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    country: Optional[str] = None
    zip: Optional[str] = None
    phone: Optional[str] = None


class CustomerPayload(ShopifyModel):
    """customers/* payload, also embedded in orders."""

    id: Optional[str] = Field(default=None, description="Shopify customer id")
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    default_address: Optional[AddressPayload] = None

    _normalize_id = field_validator("id", mode="before")(_id_to_str)


class TaxLinePayload(ShopifyModel):
    price: Optional[str] = "0.00"
    title: Optional[str] = None


class LineItemPayload(ShopifyModel):
    id: str = Field(..., description="Shopify line item id")
    product_id: Optional[str] = None
    variant_id: Optional[str] = None
    title: Optional[str] = None
    name: Optional[str] = None
    variant_title: Optional[str] = None
    sku: Optional[str] = None
    quantity: int = 1
    price: Optional[str] = "0.00"
    total_discount: Optional[str] = "0.00"
    tax_lines: List[TaxLinePayload] = Field(default_factory=list)

    _normalize_ids = field_validator("id", "product_id", "variant_id", mode="before")(_id_to_str)

    @field_validator("price", "total_discount", mode="before")
    @classmethod
    def _money_to_str(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)


class OrderPayload(ShopifyModel):
    """orders/* payload."""

    id: str = Field(..., description="Shopify order id")
    order_number: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    total_price: Optional[str] = "0.00"
    currency: Optional[str] = "USD"
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[str] = None
    customer: Optional[CustomerPayload] = None
    line_items: List[LineItemPayload] = Field(default_factory=list)

    _normalize_ids = field_validator("id", "order_number", mode="before")(_id_to_str)

    @field_validator("total_price", mode="before")
    @classmethod
    def _money_to_str(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)


class VariantPayload(ShopifyModel):
    id: Optional[str] = None
    price: Optional[str] = None

    _normalize_id = field_validator("id", mode="before")(_id_to_str)

    @field_validator("price", mode="before")
    @classmethod
    def _money_to_str(cls, value: Any) -> Optional[str]:
        return None if value is None else str(value)


class ProductPayload(ShopifyModel):
    """products/* payload; `title` is checked by reconciliation, not here."""

    id: str = Field(..., description="Shopify product id")
    title: Optional[str] = None
    body_html: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    tags: Optional[str] = None
    status: Optional[str] = None
    variants: List[VariantPayload] = Field(default_factory=list)

    _normalize_id = field_validator("id", mode="before")(_id_to_str)


class CustomerWebhookPayload(CustomerPayload):
    """customers/* payload; the id is mandatory at the top level."""

    id: str = Field(..., description="Shopify customer id")


PAYLOAD_MODELS = {
    "orders": OrderPayload,
    "products": ProductPayload,
    "customers": CustomerWebhookPayload,
}
