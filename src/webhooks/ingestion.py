"""
Webhook Ingestion.

Accepts a raw Shopify webhook delivery and turns it into a queued job:

1. required headers present            (401 otherwise)
2. webhook secret configured           (500 otherwise)
3. HMAC over the raw body matches      (401 otherwise)
4. body parses as JSON                 (400 otherwise)
5. topic supported, payload valid      (422 otherwise)
6. Webhook Record written, webhook/process-webhook enqueued

Processing happens later on a worker; ingestion never waits for it.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from src.queueing.config import PROCESS_WEBHOOK, WEBHOOK_QUEUE
from src.queueing.entities import JobRecord
from src.store import StoreAdapter

from .errors import (
    InvalidSignatureError,
    MalformedPayloadError,
    MissingHeadersError,
    UnsupportedPayloadError,
    WebhookSecretMissingError,
)
from .schemas import PAYLOAD_MODELS
from .signature import verify_shopify_hmac
from .topics import parse_topic


logger = logging.getLogger(__name__)


HMAC_HEADER = "x-shopify-hmac-sha256"
TOPIC_HEADER = "x-shopify-topic"
SHOP_DOMAIN_HEADER = "x-shopify-shop-domain"
REQUIRED_HEADERS = (HMAC_HEADER, TOPIC_HEADER, SHOP_DOMAIN_HEADER)


EnqueueFn = Callable[..., JobRecord]


@dataclass
class IngestionReceipt:
    """Acknowledgement that a webhook was scheduled, not that it succeeded."""

    webhook_id: str
    job_id: str
    topic: str
    shop_domain: str


class WebhookIngestionService:
    """Verifies, records and enqueues Shopify webhooks."""

    def __init__(
        self,
        store: StoreAdapter,
        enqueue: EnqueueFn,
        secret: Optional[str] = None,
    ):
        """
        Args:
            store: Store receiving the Webhook Record
            enqueue: QueueService.enqueue or compatible callable
            secret: Shared webhook secret (default: SHOPIFY_WEBHOOK_SECRET)
        """
        self.store = store
        self.enqueue = enqueue
        self.secret = secret if secret is not None else os.getenv("SHOPIFY_WEBHOOK_SECRET", "")

    def ingest(self, raw_body: bytes, headers: Mapping[str, str]) -> IngestionReceipt:
        """
        Accept one webhook delivery.

        Args:
            raw_body: Request body exactly as received
            headers: Request headers (any case)

        Returns:
            IngestionReceipt with the webhook record id and job id

        Raises:
            WebhookRejectedError: Subclass carrying the HTTP status to answer
        """
        normalized = {key.lower(): value for key, value in headers.items()}
        missing = [name for name in REQUIRED_HEADERS if not normalized.get(name)]
        if missing:
            raise MissingHeadersError(f"Missing required headers: {', '.join(missing)}")

        if not self.secret:
            logger.error("SHOPIFY_WEBHOOK_SECRET is not configured; rejecting webhook")
            raise WebhookSecretMissingError("Webhook secret not configured")

        topic = normalized[TOPIC_HEADER]
        shop_domain = normalized[SHOP_DOMAIN_HEADER]

        if not verify_shopify_hmac(raw_body, self.secret, normalized[HMAC_HEADER]):
            logger.warning(f"Rejected webhook {topic} from {shop_domain}: invalid signature")
            raise InvalidSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedPayloadError(f"Invalid JSON body: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedPayloadError("Webhook body must be a JSON object")

        try:
            parsed_topic = parse_topic(topic)
        except ValueError as e:
            raise UnsupportedPayloadError(str(e)) from e

        try:
            PAYLOAD_MODELS[parsed_topic.resource].model_validate(payload)
        except PydanticValidationError as e:
            raise UnsupportedPayloadError(f"Invalid {topic} payload: {e.error_count()} errors") from e

        record = self.store.record_webhook(topic, shop_domain, raw_body.decode("utf-8"))
        job = self.enqueue(
            WEBHOOK_QUEUE,
            PROCESS_WEBHOOK,
            {
                "source": "shopify",
                "eventType": topic,
                "payload": payload,
                "webhookId": record.id,
                "shopDomain": shop_domain,
            },
        )

        logger.info(f"Webhook {record.id} ({topic}) queued as job {job.id}")
        return IngestionReceipt(
            webhook_id=record.id,
            job_id=job.id,
            topic=topic,
            shop_domain=shop_domain,
        )
