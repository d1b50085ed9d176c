"""
Signature and Topic Tests.
"""

import base64
import hashlib
import hmac

import pytest

from src.webhooks import SUPPORTED_TOPICS, compute_shopify_hmac, parse_topic, verify_shopify_hmac

from .conftest import SECRET


BODY = b'{"id": 820982911946154508, "total_price": "59.98"}'


class TestComputeHmac:

    def test_matches_reference_digest(self):
        expected = base64.b64encode(
            hmac.new(SECRET.encode(), BODY, hashlib.sha256).digest()
        ).decode()

        assert compute_shopify_hmac(BODY, SECRET) == expected

    def test_depends_on_secret(self):
        assert compute_shopify_hmac(BODY, SECRET) != compute_shopify_hmac(BODY, "other")


class TestVerifyHmac:

    def test_valid_signature(self):
        signature = compute_shopify_hmac(BODY, SECRET)

        assert verify_shopify_hmac(BODY, SECRET, signature) is True

    def test_surrounding_whitespace_tolerated(self):
        signature = f" {compute_shopify_hmac(BODY, SECRET)}\n"

        assert verify_shopify_hmac(BODY, SECRET, signature) is True

    def test_body_altered_after_signing(self):
        """Re-serialized JSON is different bytes, so it must not verify."""
        signature = compute_shopify_hmac(BODY, SECRET)
        reformatted = b'{"id":820982911946154508,"total_price":"59.98"}'

        assert verify_shopify_hmac(reformatted, SECRET, signature) is False

    def test_wrong_secret(self):
        signature = compute_shopify_hmac(BODY, "attacker")

        assert verify_shopify_hmac(BODY, SECRET, signature) is False

    @pytest.mark.parametrize("signature", [None, ""])
    def test_missing_signature(self, signature):
        assert verify_shopify_hmac(BODY, SECRET, signature) is False

    def test_missing_secret(self):
        signature = compute_shopify_hmac(BODY, "")

        assert verify_shopify_hmac(BODY, "", signature) is False


class TestTopics:

    def test_supported_topic_set(self):
        assert SUPPORTED_TOPICS == {
            "orders/create",
            "orders/updated",
            "orders/cancelled",
            "orders/paid",
            "orders/fulfilled",
            "products/create",
            "products/update",
            "products/delete",
            "customers/create",
            "customers/update",
            "customers/delete",
        }

    def test_parse_topic(self):
        topic = parse_topic("orders/paid")

        assert topic.resource == "orders"
        assert topic.event == "paid"
        assert topic.entity == "order"
        assert str(topic) == "orders/paid"

    @pytest.mark.parametrize("topic", ["orders/update", "carts/create", "orders", ""])
    def test_unsupported_topic(self, topic):
        with pytest.raises(ValueError):
            parse_topic(topic)
