"""
Webhook queue processors.

- process-webhook: reconciles a verified Shopify webhook into the store,
  schedules follow-up jobs, then marks the Webhook Record processed
- verify-webhook: re-checks the HMAC of a stored Webhook Record
"""

import logging
import os
import time
from typing import Callable, Optional

from src.queueing.config import (
    ORDER_PROCESSING_QUEUE,
    PROCESS_ORDER,
    PRODUCT_SYNC_QUEUE,
    SYNC_PRODUCT,
)
from src.queueing.entities import JobRecord, JobResult
from src.queueing.errors import AuthError, NotFoundError
from src.queueing.registry import JobContext, JobProcessor
from src.store import Order, StoreAdapter, WebhookRecord
from src.webhooks.reconciliation import ReconcileAction, Reconciler
from src.webhooks.signature import verify_shopify_hmac

from .common import require_choice, require_fields


logger = logging.getLogger(__name__)


WEBHOOK_SOURCES = ("shopify", "stripe", "custom")
PRODUCT_FOLLOW_UP_DELAY_MS = 1000

# Local-only key in Order.metadata recording the scheduled confirmation
CONFIRMATION_JOB_KEY = "confirmationJobId"
NO_CONFIRMATION_ACTIONS = (ReconcileAction.CANCELLED, ReconcileAction.NOT_FOUND, ReconcileAction.DELETED)


class WebhookProcessor(JobProcessor):
    """process-webhook"""

    def __init__(
        self,
        reconciler: Reconciler,
        store: StoreAdapter,
        enqueue: Optional[Callable[..., JobRecord]] = None,
    ):
        self.reconciler = reconciler
        self.store = store
        self.enqueue = enqueue

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        require_fields(payload, "source", "eventType")
        source = require_choice(payload, "source", WEBHOOK_SOURCES)
        event_type = payload["eventType"]

        context.report_progress(25)

        if source == "shopify":
            require_fields(payload, "payload")
            shop_domain = (
                payload.get("shopDomain")
                or (payload.get("headers") or {}).get("x-shopify-shop-domain")
                or "unknown"
            )
            outcome = self.reconciler.apply(event_type, payload["payload"], shop_domain)
            follow_ups = self._schedule_follow_ups(outcome, shop_domain)
            data = {**outcome.to_dict(), "followUpJobs": follow_ups}
        else:
            logger.info(f"No handler for {source} webhook {event_type}; ignoring")
            data = {"entity": "unknown", "action": ReconcileAction.IGNORED.value}

        webhook_id = payload.get("webhookId")
        if webhook_id:
            try:
                self.store.mark_webhook_processed(webhook_id)
            except LookupError:
                logger.warning(f"Webhook record {webhook_id} not found; cannot mark processed")

        context.report_progress(100)
        return JobResult.ok(
            f"Webhook {event_type} processed: {data['action']}",
            data={"source": source, "eventType": event_type, "webhookId": webhook_id, **data},
            started=started,
        )

    def _schedule_follow_ups(self, outcome, shop_domain: str) -> list[str]:
        if self.enqueue is None:
            return []

        job_ids = []
        if outcome.entity == "order" and outcome.local_id and outcome.action not in NO_CONFIRMATION_ACTIONS:
            confirmation_id = self._ensure_confirmation(outcome.local_id)
            if confirmation_id:
                job_ids.append(confirmation_id)

        line_items = outcome.details.get("lineItems") or {}
        for product_id in line_items.get("missingProducts", []):
            job = self.enqueue(
                PRODUCT_SYNC_QUEUE,
                SYNC_PRODUCT,
                {"shopifyProductId": product_id, "action": "create", "shopDomain": shop_domain},
                delay=PRODUCT_FOLLOW_UP_DELAY_MS,
            )
            job_ids.append(job.id)
        return job_ids

    def _ensure_confirmation(self, order_id: str) -> Optional[str]:
        """
        Schedule the order confirmation unless one is already recorded.

        Checked on every order webhook, not only on create, so a retry of a
        delivery that created the order but failed before scheduling still
        sends it.

        Returns:
            The new job id, or None if nothing was scheduled
        """
        order = self.store.get(Order, order_id)
        if order is None or order.status == "cancelled" or order.metadata.get(CONFIRMATION_JOB_KEY):
            return None

        job = self.enqueue(
            ORDER_PROCESSING_QUEUE,
            PROCESS_ORDER,
            {"orderId": order.id, "action": "send-confirmation"},
        )
        self.store.update(Order, order.id, metadata={**order.metadata, CONFIRMATION_JOB_KEY: job.id})
        return job.id


class VerifyWebhookProcessor(JobProcessor):
    """verify-webhook: recompute the HMAC over a stored raw body."""

    def __init__(self, store: StoreAdapter, secret: Optional[str] = None):
        self.store = store
        self.secret = secret if secret is not None else os.getenv("SHOPIFY_WEBHOOK_SECRET", "")

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        require_fields(payload, "webhookId", "signature")

        record = self.store.get(WebhookRecord, payload["webhookId"])
        if record is None:
            raise NotFoundError(
                f"Webhook record not found: {payload['webhookId']}",
                context={"webhookId": payload["webhookId"]},
            )
        if not self.secret:
            raise AuthError("Webhook secret not configured", code="WEBHOOK_SECRET_MISSING")

        if not verify_shopify_hmac(record.payload.encode("utf-8"), self.secret, payload["signature"]):
            raise AuthError(
                "Webhook signature mismatch",
                code="INVALID_SIGNATURE",
                context={"webhookId": record.id},
            )

        context.report_progress(100)
        return JobResult.ok(
            "Webhook signature verified",
            data={"webhookId": record.id, "verified": True},
            started=started,
        )
