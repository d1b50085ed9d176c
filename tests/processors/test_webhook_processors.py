"""
Webhook Queue Processor Tests.
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from src.processors.webhook import VerifyWebhookProcessor, WebhookProcessor
from src.queueing.config import (
    ORDER_PROCESSING_QUEUE,
    PROCESS_WEBHOOK,
    PRODUCT_SYNC_QUEUE,
    SYNC_PRODUCT,
    VERIFY_WEBHOOK,
    WEBHOOK_QUEUE,
)
from src.queueing.errors import AuthError, NetworkError, NotFoundError, ValidationError
from src.store import Order, WebhookRecord
from src.webhooks import Reconciler, compute_shopify_hmac


SHOP = "acme.myshopify.com"
SECRET = "shpss_test_secret"

ORDER = {
    "id": 450789469,
    "order_number": 1001,
    "email": "jon@example.com",
    "total_price": "29.99",
    "line_items": [{"id": 1, "product_id": 632910392, "title": "IPod Nano", "quantity": 1, "price": "29.99"}],
}


@pytest.fixture
def enqueue():
    counter = iter(range(1, 100))
    return MagicMock(side_effect=lambda *args, **kwargs: SimpleNamespace(id=f"job-{next(counter)}"))


@pytest.fixture
def processor(store, enqueue) -> WebhookProcessor:
    return WebhookProcessor(Reconciler(store), store, enqueue)


def webhook_payload(store, topic="orders/create", body=ORDER, **overrides) -> dict:
    record = store.record_webhook(topic, SHOP, json.dumps(body))
    payload = {
        "source": "shopify",
        "eventType": topic,
        "payload": body,
        "webhookId": record.id,
        "shopDomain": SHOP,
    }
    payload.update(overrides)
    return payload


class TestProcessWebhook:

    def test_new_order_schedules_follow_ups(self, processor, store, enqueue, make_context):
        # Setup
        payload = webhook_payload(store)

        # Action
        result = processor(payload, make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))

        # Assertion: reconciled and marked processed
        assert result.data["action"] == "created"
        assert store.get(WebhookRecord, payload["webhookId"]).processed is True
        order = store.find_one(Order, shopify_order_id="450789469")

        # Assertion: confirmation and delayed product sync
        first, second = enqueue.call_args_list
        assert first.args == (ORDER_PROCESSING_QUEUE, "process-order",
                              {"orderId": order.id, "action": "send-confirmation"})
        assert second.args == (PRODUCT_SYNC_QUEUE, SYNC_PRODUCT,
                               {"shopifyProductId": "632910392", "action": "create", "shopDomain": SHOP})
        assert second.kwargs == {"delay": 1000}
        assert result.data["followUpJobs"] == ["job-1", "job-2"]

    def test_updated_order_schedules_no_confirmation(self, processor, store, enqueue, make_context):
        processor(webhook_payload(store), make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))
        enqueue.reset_mock()

        body = {**ORDER, "total_price": "35.00"}
        result = processor(webhook_payload(store, "orders/updated", body),
                           make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))

        assert result.data["action"] == "updated"
        queues = [call.args[0] for call in enqueue.call_args_list]
        assert ORDER_PROCESSING_QUEUE not in queues

    def test_retry_after_failed_scheduling_sends_confirmation(self, processor, store, enqueue, make_context):
        # Setup: the order is stored but the confirmation enqueue fails
        payload = webhook_payload(store)
        default = enqueue.side_effect
        enqueue.side_effect = NetworkError("queue unavailable")
        with pytest.raises(NetworkError):
            processor(payload, make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))
        enqueue.side_effect = default
        enqueue.reset_mock()

        # Action: the job runs again with the same delivery
        result = processor(payload, make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))

        # Assertion: order unchanged but confirmation scheduled and recorded
        order = store.find_one(Order, shopify_order_id="450789469")
        assert result.data["action"] == "unchanged"
        assert enqueue.call_args_list[0].args == (ORDER_PROCESSING_QUEUE, "process-order",
                                                  {"orderId": order.id, "action": "send-confirmation"})
        assert order.metadata["confirmationJobId"] == result.data["followUpJobs"][0]
        assert store.get(WebhookRecord, payload["webhookId"]).processed is True

        # Assertion: a later delivery does not send a second confirmation
        enqueue.reset_mock()
        processor(webhook_payload(store), make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))
        queues = [call.args[0] for call in enqueue.call_args_list]
        assert ORDER_PROCESSING_QUEUE not in queues

    def test_shop_from_headers(self, processor, store, make_context):
        payload = webhook_payload(store, shopDomain=None, headers={"x-shopify-shop-domain": "other.myshopify.com"})

        processor(payload, make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))

        assert store.find_one(Order, shopify_order_id="450789469").shop_domain == "other.myshopify.com"

    def test_other_sources_acknowledged(self, processor, store, enqueue, make_context):
        payload = {"source": "stripe", "eventType": "charge.succeeded", "payload": {"id": "ch_1"}}

        result = processor(payload, make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))

        assert result.data["action"] == "ignored"
        assert store.count(Order) == 0
        enqueue.assert_not_called()

    def test_unknown_source(self, processor, make_context):
        with pytest.raises(ValidationError):
            processor({"source": "paypal", "eventType": "x"}, make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))

    def test_missing_record_still_succeeds(self, processor, make_context):
        payload = {"source": "shopify", "eventType": "customers/create",
                   "payload": {"id": 1, "email": "a@example.com"}, "webhookId": "gone", "shopDomain": SHOP}

        result = processor(payload, make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))

        assert result.data["action"] == "created"

    def test_failed_reconciliation_leaves_record_unprocessed(self, processor, store, make_context):
        payload = webhook_payload(store, "products/create", {"id": 5})

        with pytest.raises(ValidationError):
            processor(payload, make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))

        assert store.get(WebhookRecord, payload["webhookId"]).processed is False

    def test_without_enqueue_no_follow_ups(self, store, make_context):
        processor = WebhookProcessor(Reconciler(store), store)

        result = processor(webhook_payload(store), make_context(WEBHOOK_QUEUE, PROCESS_WEBHOOK))

        assert result.data["followUpJobs"] == []


class TestVerifyWebhook:

    def test_valid_signature(self, store, make_context):
        record = store.record_webhook("orders/create", SHOP, json.dumps(ORDER))
        processor = VerifyWebhookProcessor(store, SECRET)
        signature = compute_shopify_hmac(record.payload.encode("utf-8"), SECRET)

        result = processor({"webhookId": record.id, "signature": signature},
                           make_context(WEBHOOK_QUEUE, VERIFY_WEBHOOK))

        assert result.data == {"webhookId": record.id, "verified": True}

    def test_mismatch(self, store, make_context):
        record = store.record_webhook("orders/create", SHOP, json.dumps(ORDER))
        processor = VerifyWebhookProcessor(store, SECRET)

        with pytest.raises(AuthError) as exc_info:
            processor({"webhookId": record.id, "signature": "AAAA"}, make_context(WEBHOOK_QUEUE, VERIFY_WEBHOOK))

        assert exc_info.value.code == "INVALID_SIGNATURE"
        assert exc_info.value.retryable is False

    def test_unknown_record(self, store, make_context):
        processor = VerifyWebhookProcessor(store, SECRET)

        with pytest.raises(NotFoundError):
            processor({"webhookId": "nope", "signature": "AAAA"}, make_context(WEBHOOK_QUEUE, VERIFY_WEBHOOK))

    def test_no_secret(self, store, make_context, monkeypatch):
        monkeypatch.delenv("SHOPIFY_WEBHOOK_SECRET", raising=False)
        record = store.record_webhook("orders/create", SHOP, "{}")
        processor = VerifyWebhookProcessor(store)

        with pytest.raises(AuthError) as exc_info:
            processor({"webhookId": record.id, "signature": "AAAA"}, make_context(WEBHOOK_QUEUE, VERIFY_WEBHOOK))

        assert exc_info.value.code == "WEBHOOK_SECRET_MISSING"
