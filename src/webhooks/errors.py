"""
Webhook ingestion rejections.

Raised synchronously while a webhook request is being accepted; each carries
the HTTP status the API layer answers with. Nothing is enqueued for a
rejected webhook.
"""


class WebhookRejectedError(Exception):
    """Base exception for rejected webhook deliveries."""

    status_code = 400

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class MissingHeadersError(WebhookRejectedError):
    """Required Shopify headers are absent."""

    status_code = 401


class InvalidSignatureError(WebhookRejectedError):
    """HMAC signature does not match the raw body."""

    status_code = 401


class WebhookSecretMissingError(WebhookRejectedError):
    """No webhook secret is configured; nothing can be verified."""

    status_code = 500


class MalformedPayloadError(WebhookRejectedError):
    """Body is not valid JSON."""

    status_code = 400


class UnsupportedPayloadError(WebhookRejectedError):
    """Unknown topic or payload that fails schema validation."""

    status_code = 422
