"""
Order processing processors.

process-order actions:
- process-payment: records the payment and moves the order to processing
- send-confirmation: schedules an order-confirmation email to the customer
- cancel-order: cancels on Shopify first, then locally

fulfill-order marks the order fulfilled and completed.

Either processor accepts an optional `notification` {type, recipient,
urgency} that is scheduled once the action succeeded.
"""

import logging
import time
from typing import Callable, Optional

from src.queueing.config import EMAIL_QUEUE, SEND_EMAIL
from src.queueing.entities import JobRecord, JobResult, to_iso, utc_now
from src.queueing.errors import NotFoundError, ValidationError
from src.queueing.registry import JobContext, JobProcessor
from src.shopify import ShopifyClient
from src.store import Customer, Order, StoreAdapter

from .common import require_choice, require_fields
from .notifications import enqueue_notification


logger = logging.getLogger(__name__)


ORDER_ACTIONS = ("process-payment", "send-confirmation", "cancel-order")


class _OrderProcessorBase(JobProcessor):
    def __init__(
        self,
        store: StoreAdapter,
        enqueue: Optional[Callable[..., JobRecord]] = None,
    ):
        self.store = store
        self.enqueue = enqueue

    def _load_order(self, payload: dict) -> Order:
        if payload.get("orderId"):
            order = self.store.get(Order, payload["orderId"])
        elif payload.get("shopifyOrderId"):
            order = self.store.find_one(Order, shopify_order_id=str(payload["shopifyOrderId"]))
        else:
            raise ValidationError(
                "Missing required field(s): orderId or shopifyOrderId",
                code="MISSING_FIELD",
                context={"fields": ["orderId", "shopifyOrderId"]},
            )

        if order is None:
            raise NotFoundError(
                "Order not found",
                context={k: payload.get(k) for k in ("orderId", "shopifyOrderId") if payload.get(k)},
            )
        return order

    def _notify(self, payload: dict, message: str) -> Optional[str]:
        notification = payload.get("notification")
        if not notification or self.enqueue is None:
            return None
        require_fields(notification, "type", "recipient")
        job = enqueue_notification(
            self.enqueue,
            notification["type"],
            notification["recipient"],
            message,
            urgency=notification.get("urgency", "normal"),
        )
        return job.id


class ProcessOrderProcessor(_OrderProcessorBase):
    """process-order"""

    def __init__(
        self,
        store: StoreAdapter,
        client: Optional[ShopifyClient] = None,
        enqueue: Optional[Callable[..., JobRecord]] = None,
    ):
        super().__init__(store, enqueue)
        self.client = client

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        action = require_choice(payload, "action", ORDER_ACTIONS)
        order = self._load_order(payload)
        context.report_progress(25)

        if action == "process-payment":
            data = self._process_payment(order)
        elif action == "send-confirmation":
            data = self._send_confirmation(order)
        else:
            data = self._cancel(order, payload.get("reason"))
        context.report_progress(75)

        notification_job = self._notify(payload, f"Order {order.order_number or order.id}: {action} done")
        context.report_progress(100)

        return JobResult.ok(
            f"Order {action} processed successfully",
            data={"orderId": order.id, "action": action, "notificationJobId": notification_job, **data},
            started=started,
        )

    def _process_payment(self, order: Order) -> dict:
        if order.status == "cancelled":
            raise ValidationError(
                f"Cannot process payment for cancelled order {order.id}",
                code="ORDER_CANCELLED",
            )
        updated = self.store.update(
            Order,
            order.id,
            financial_status="paid",
            status="processing" if order.status == "pending" else order.status,
            metadata={**order.metadata, "payment_processed_at": to_iso(utc_now())},
        )
        return {"status": updated.status, "financialStatus": updated.financial_status}

    def _send_confirmation(self, order: Order) -> dict:
        customer = self.store.get(Customer, order.customer_id) if order.customer_id else None
        email = (customer.email if customer else None) or order.metadata.get("email")
        if not email:
            logger.info(f"Order {order.id} has no customer email; confirmation skipped")
            return {"emailJobId": None, "skipped": True}
        if self.enqueue is None:
            raise ValidationError("No queue available to schedule the confirmation email")

        customer_name = " ".join(
            part for part in (customer.first_name, customer.last_name) if part
        ) if customer else ""
        job = self.enqueue(
            EMAIL_QUEUE,
            SEND_EMAIL,
            {
                "to": email,
                "subject": f"Order Confirmation #{order.order_number or order.id}",
                "template": "order-confirmation",
                "templateData": {
                    "customerName": customer_name or "there",
                    "orderNumber": order.order_number or order.id,
                    "totalPrice": order.total_price,
                    "currency": order.currency,
                },
            },
        )
        return {"emailJobId": job.id, "skipped": False}

    def _cancel(self, order: Order, reason: Optional[str]) -> dict:
        if order.status == "cancelled":
            return {"status": "cancelled", "alreadyCancelled": True}

        if order.shopify_order_id:
            if self.client is None:
                raise ValidationError("Shopify client not configured", code="SHOPIFY_NOT_CONFIGURED")
            self.client.cancel_order(order.shopify_order_id)

        updated = self.store.update(
            Order,
            order.id,
            status="cancelled",
            financial_status="voided",
            cancel_reason=reason or order.cancel_reason or "other",
        )
        logger.info(f"Order {order.id} cancelled")
        return {"status": updated.status, "alreadyCancelled": False}


class FulfillOrderProcessor(_OrderProcessorBase):
    """fulfill-order"""

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        order = self._load_order(payload)
        if order.status == "cancelled":
            raise ValidationError(f"Cannot fulfill cancelled order {order.id}", code="ORDER_CANCELLED")
        context.report_progress(50)

        updated = self.store.update(Order, order.id, fulfillment_status="fulfilled", status="completed")
        notification_job = self._notify(payload, f"Order {order.order_number or order.id} fulfilled")
        context.report_progress(100)

        return JobResult.ok(
            "Order fulfilled",
            data={
                "orderId": updated.id,
                "status": updated.status,
                "fulfillmentStatus": updated.fulfillment_status,
                "notificationJobId": notification_job,
            },
            started=started,
        )
