"""
Webhooks router for Shopify deliveries.

- POST /webhooks/shopify - Verify, record and enqueue one webhook

Authenticated by HMAC signature over the raw body, not by API key.
Answers 202 once the webhook is queued; processing happens on a worker.
"""

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.concurrency import run_in_threadpool

from src.queueing.errors import BackendUnavailableError
from src.webhooks.errors import WebhookRejectedError

from .._queue_state import get_webhook_ingestion
from ..schemas.webhooks import WebhookAcceptedResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/shopify", response_model=WebhookAcceptedResponse, status_code=202)
async def receive_shopify_webhook(request: Request):
    """
    Receive a Shopify webhook.

    Status codes:
    - 202: queued for processing
    - 400: body is not JSON
    - 401: missing Shopify headers or bad signature
    - 422: unsupported topic or invalid payload
    - 500: webhook secret not configured
    - 503: queue backend unavailable
    """
    raw_body = await request.body()
    ingestion = get_webhook_ingestion()

    try:
        receipt = await run_in_threadpool(ingestion.ingest, raw_body, request.headers)
    except WebhookRejectedError as e:
        raise HTTPException(status_code=e.status_code, detail=e.reason)
    except BackendUnavailableError as e:
        logger.error(f"Webhook could not be queued: {e}")
        raise HTTPException(status_code=503, detail="Queue backend unavailable")

    return WebhookAcceptedResponse(
        webhook_id=receipt.webhook_id,
        job_id=receipt.job_id,
        topic=receipt.topic,
        shop_domain=receipt.shop_domain,
    )
