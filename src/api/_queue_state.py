"""
Queue state management for API integration.

Provides singleton access to the QueueService and the webhook ingestion
service. Initialized during FastAPI lifespan. The API process only enqueues
and reads statistics; worker pools run in the worker process
(python -m src.queueing).

Usage:
    from ._queue_state import get_queue_service, init_queue_state

    # In lifespan:
    init_queue_state()

    # In routers:
    service = get_queue_service()
"""

import logging
from typing import Optional

from src.queueing.service import QueueService
from src.store import StoreAdapter, create_store
from src.webhooks.ingestion import WebhookIngestionService


logger = logging.getLogger(__name__)


_queue_service: Optional[QueueService] = None
_webhook_ingestion: Optional[WebhookIngestionService] = None


def init_queue_state(
    queue_service: Optional[QueueService] = None,
    store: Optional[StoreAdapter] = None,
    webhook_secret: Optional[str] = None,
) -> QueueService:
    """
    Initialize the queue singletons.

    Called during FastAPI lifespan startup; a second call is a no-op.

    Args:
        queue_service: Prebuilt service (default: QueueService.from_env())
        store: Store for webhook records (default: STORE_DB_PATH)
        webhook_secret: Shopify webhook secret (default: SHOPIFY_WEBHOOK_SECRET)

    Returns:
        The QueueService singleton
    """
    global _queue_service, _webhook_ingestion

    if _queue_service is not None:
        return _queue_service

    _queue_service = queue_service or QueueService.from_env()
    _webhook_ingestion = WebhookIngestionService(
        store=store or create_store(),
        enqueue=_queue_service.enqueue,
        secret=webhook_secret,
    )
    logger.info(f"Queue state initialized (backend={_queue_service.backend.name})")
    return _queue_service


def get_queue_service() -> QueueService:
    """
    Raises:
        RuntimeError: If queue state not initialized
    """
    if _queue_service is None:
        raise RuntimeError(
            "Queue service not initialized. "
            "Ensure init_queue_state() is called during startup."
        )
    return _queue_service


def get_webhook_ingestion() -> WebhookIngestionService:
    """
    Raises:
        RuntimeError: If queue state not initialized
    """
    if _webhook_ingestion is None:
        raise RuntimeError(
            "Webhook ingestion not initialized. "
            "Ensure init_queue_state() is called during startup."
        )
    return _webhook_ingestion


def shutdown_queue_state() -> None:
    """Release the backend connection; called during lifespan shutdown."""
    global _queue_service, _webhook_ingestion

    if _queue_service is not None:
        _queue_service.shutdown()

    _queue_service = None
    _webhook_ingestion = None
