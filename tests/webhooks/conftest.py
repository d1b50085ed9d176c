"""
Webhook Test Fixtures.

Payload builders shaped like real Shopify deliveries (integer ids, string
money amounts) and a reconciler over an empty store.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from src.webhooks import Reconciler, compute_shopify_hmac


SHOP = "acme.myshopify.com"
SECRET = "shpss_test_secret"


def order_payload(**overrides) -> dict:
    payload = {
        "id": 820982911946154508,
        "order_number": 1001,
        "name": "#1001",
        "email": "jon@example.com",
        "total_price": "59.98",
        "currency": "USD",
        "financial_status": "pending",
        "fulfillment_status": None,
        "cancelled_at": None,
        "cancel_reason": None,
        "customer": {
            "id": 115310627314723954,
            "email": "jon@example.com",
            "first_name": "Jon",
            "last_name": "Snow",
        },
        "line_items": [
            {
                "id": 866550311766439020,
                "product_id": 632910392,
                "variant_id": 808950810,
                "title": "IPod Nano - 8GB",
                "variant_title": "Pink",
                "sku": "IPOD-342-N",
                "quantity": 2,
                "price": "29.99",
                "total_discount": "0.00",
                "tax_lines": [{"title": "State Tax", "price": "3.00"}],
                "vendor": "Apple",
            }
        ],
    }
    payload.update(overrides)
    return payload


def product_payload(**overrides) -> dict:
    payload = {
        "id": 632910392,
        "title": "IPod Nano - 8GB",
        "body_html": "<p>It's the small iPod with one very big idea.</p>",
        "vendor": "Apple",
        "product_type": "Cult Products",
        "tags": "Emotive, Flash Memory",
        "status": "active",
        "variants": [{"id": 808950810, "price": "199.00"}],
    }
    payload.update(overrides)
    return payload


def customer_payload(**overrides) -> dict:
    payload = {
        "id": 207119551,
        "email": "bob.norman@mail.example.com",
        "first_name": "Bob",
        "last_name": "Norman",
        "phone": None,
        "default_address": {
            "address1": "Chestnut Street 92",
            "city": "Louisville",
            "province": "Kentucky",
            "country": "United States",
            "zip": "40202",
            "phone": "555-625-1199",
        },
    }
    payload.update(overrides)
    return payload


def signed_request(payload, topic: str, secret: str = SECRET, shop: str = SHOP) -> tuple[bytes, dict]:
    """Raw body and headers as Shopify would send them."""
    raw_body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    headers = {
        "X-Shopify-Hmac-Sha256": compute_shopify_hmac(raw_body, secret),
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop,
        "Content-Type": "application/json",
    }
    return raw_body, headers


@pytest.fixture
def reconciler(store) -> Reconciler:
    return Reconciler(store)


class SteppingClock:
    """Clock that only moves when told to, for releasing delayed jobs."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def tick(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock()
