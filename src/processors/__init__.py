"""
Job Processors Module.

register_processors() fills a ProcessorRegistry with one processor per
job kind in the queue catalogue, wired to the given collaborators.
"""

from typing import Callable, Optional

import httpx

from src.queueing.config import (
    BACKGROUND_QUEUE,
    CLEANUP_DATA,
    EMAIL_QUEUE,
    FULFILL_ORDER,
    GENERATE_REPORT,
    NOTIFICATIONS_QUEUE,
    ORDER_PROCESSING_QUEUE,
    PROCESS_ORDER,
    PROCESS_WEBHOOK,
    PRODUCT_SYNC_QUEUE,
    SEND_BULK_EMAIL,
    SEND_EMAIL,
    SEND_NOTIFICATION,
    SYNC_ALL_PRODUCTS,
    SYNC_PRODUCT,
    VERIFY_WEBHOOK,
    WEBHOOK_QUEUE,
)
from src.queueing.entities import JobRecord
from src.queueing.registry import ProcessorRegistry
from src.shopify import ShopifyClient
from src.store import StoreAdapter
from src.webhooks.reconciliation import Reconciler

from .background import CleanupDataProcessor, GenerateReportProcessor
from .email import EmailSender, SendBulkEmailProcessor, SendEmailProcessor, SmtpEmailSender
from .notifications import SendNotificationProcessor, enqueue_notification
from .order_processing import FulfillOrderProcessor, ProcessOrderProcessor
from .product_sync import SyncAllProductsProcessor, SyncProductProcessor
from .webhook import VerifyWebhookProcessor, WebhookProcessor


def register_processors(
    registry: ProcessorRegistry,
    store: StoreAdapter,
    shopify_client: ShopifyClient,
    enqueue: Optional[Callable[..., JobRecord]] = None,
    email_sender: Optional[EmailSender] = None,
    http_client: Optional[httpx.Client] = None,
    clean_jobs: Optional[Callable[[int], dict]] = None,
    webhook_secret: Optional[str] = None,
) -> ProcessorRegistry:
    """
    Register every processor.

    Args:
        registry: Registry to fill
        store: Local data store
        shopify_client: Shopify Admin API client
        enqueue: QueueService.enqueue, for follow-up jobs
        email_sender: Email delivery (default: SMTP from env)
        http_client: Client for notification webhooks
        clean_jobs: QueueService.cleanup, for the cleanup-data task
        webhook_secret: Secret for verify-webhook (default: env)

    Returns:
        The same registry
    """
    reconciler = Reconciler(store)
    email_sender = email_sender or SmtpEmailSender.from_env()

    registry.register(WEBHOOK_QUEUE, PROCESS_WEBHOOK, WebhookProcessor(reconciler, store, enqueue))
    registry.register(WEBHOOK_QUEUE, VERIFY_WEBHOOK, VerifyWebhookProcessor(store, webhook_secret))

    registry.register(EMAIL_QUEUE, SEND_EMAIL, SendEmailProcessor(email_sender))
    registry.register(EMAIL_QUEUE, SEND_BULK_EMAIL, SendBulkEmailProcessor(email_sender))

    registry.register(PRODUCT_SYNC_QUEUE, SYNC_PRODUCT, SyncProductProcessor(shopify_client, reconciler))
    registry.register(PRODUCT_SYNC_QUEUE, SYNC_ALL_PRODUCTS, SyncAllProductsProcessor(shopify_client, reconciler))

    registry.register(BACKGROUND_QUEUE, CLEANUP_DATA, CleanupDataProcessor(store, clean_jobs))
    registry.register(BACKGROUND_QUEUE, GENERATE_REPORT, GenerateReportProcessor(store))

    registry.register(ORDER_PROCESSING_QUEUE, PROCESS_ORDER, ProcessOrderProcessor(store, shopify_client, enqueue))
    registry.register(ORDER_PROCESSING_QUEUE, FULFILL_ORDER, FulfillOrderProcessor(store, enqueue))

    registry.register(NOTIFICATIONS_QUEUE, SEND_NOTIFICATION, SendNotificationProcessor(http_client))

    return registry


__all__ = [
    "register_processors",
    "enqueue_notification",
    "WebhookProcessor",
    "VerifyWebhookProcessor",
    "SendEmailProcessor",
    "SendBulkEmailProcessor",
    "SmtpEmailSender",
    "SyncProductProcessor",
    "SyncAllProductsProcessor",
    "CleanupDataProcessor",
    "GenerateReportProcessor",
    "ProcessOrderProcessor",
    "FulfillOrderProcessor",
    "SendNotificationProcessor",
]
