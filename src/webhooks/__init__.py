"""
Shopify Webhooks Module.

Signature verification, ingestion (verify, record, enqueue) and the
reconciliation state machines for orders, products and customers.
"""

from .errors import (
    WebhookRejectedError,
    MissingHeadersError,
    InvalidSignatureError,
    WebhookSecretMissingError,
    MalformedPayloadError,
    UnsupportedPayloadError,
)
from .signature import compute_shopify_hmac, verify_shopify_hmac
from .topics import SUPPORTED_TOPICS, Topic, parse_topic
from .reconciliation import Reconciler, ReconcileAction, ReconcileOutcome
from .ingestion import WebhookIngestionService, IngestionReceipt

__all__ = [
    "WebhookRejectedError",
    "MissingHeadersError",
    "InvalidSignatureError",
    "WebhookSecretMissingError",
    "MalformedPayloadError",
    "UnsupportedPayloadError",
    "compute_shopify_hmac",
    "verify_shopify_hmac",
    "SUPPORTED_TOPICS",
    "Topic",
    "parse_topic",
    "Reconciler",
    "ReconcileAction",
    "ReconcileOutcome",
    "WebhookIngestionService",
    "IngestionReceipt",
]
