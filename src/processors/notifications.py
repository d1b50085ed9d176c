"""
Notification processor and scheduling helper.

send-notification delivers {type, recipient, message, urgency} through an
HTTP channel. "webhook" posts the notification as JSON to the recipient URL;
"slack" posts a Slack incoming-webhook message. No SMS or push provider is
configured, so those types fail validation.
"""

import logging
import time
from typing import Callable, Optional

import httpx

from src.queueing.config import NOTIFICATIONS_QUEUE, SEND_NOTIFICATION
from src.queueing.entities import JobRecord, JobResult, to_iso, utc_now
from src.queueing.errors import ValidationError
from src.queueing.registry import JobContext, JobProcessor

from .common import require_choice, require_fields


logger = logging.getLogger(__name__)


NOTIFICATION_TYPES = ("webhook", "slack", "sms", "push")
HTTP_CHANNELS = ("webhook", "slack")
URGENCY_LEVELS = ("low", "normal", "high")
NORMAL_NOTIFICATION_DELAY_MS = 5000
NOTIFICATION_TIMEOUT_SECONDS = 10.0


def enqueue_notification(
    enqueue: Callable[..., JobRecord],
    notification_type: str,
    recipient: str,
    message: str,
    urgency: str = "normal",
    title: Optional[str] = None,
) -> JobRecord:
    """Schedule a notification; high urgency goes out immediately, others after 5s."""
    payload = {
        "type": notification_type,
        "recipient": recipient,
        "message": message,
        "urgency": urgency,
    }
    if title:
        payload["title"] = title
    delay = 0 if urgency == "high" else NORMAL_NOTIFICATION_DELAY_MS
    return enqueue(NOTIFICATIONS_QUEUE, SEND_NOTIFICATION, payload, delay=delay)


class SendNotificationProcessor(JobProcessor):
    """send-notification"""

    def __init__(self, http_client: Optional[httpx.Client] = None):
        self.http_client = http_client or httpx.Client(timeout=NOTIFICATION_TIMEOUT_SECONDS)

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        require_fields(payload, "type", "recipient", "message")
        notification_type = require_choice(payload, "type", NOTIFICATION_TYPES)
        urgency = require_choice(payload, "urgency", URGENCY_LEVELS, default="normal")

        if notification_type not in HTTP_CHANNELS:
            raise ValidationError(
                f"No provider configured for {notification_type} notifications",
                code="PROVIDER_NOT_CONFIGURED",
                context={"type": notification_type},
            )

        recipient = payload["recipient"]
        if not str(recipient).startswith(("http://", "https://")):
            raise ValidationError(
                f"{notification_type} recipient must be an http(s) URL",
                code="INVALID_RECIPIENT",
                context={"recipient": recipient},
            )
        context.report_progress(25)

        sent_at = to_iso(utc_now())
        if notification_type == "slack":
            text = payload["message"]
            if payload.get("title"):
                text = f"*{payload['title']}*\n{text}"
            body = {"text": text}
        else:
            body = {
                "title": payload.get("title"),
                "message": payload["message"],
                "urgency": urgency,
                "sentAt": sent_at,
                "jobId": context.job_id,
            }

        response = self.http_client.post(
            recipient,
            json=body,
            headers={"User-Agent": "ShopifyJobQueue/1.0", "X-Job-ID": context.job_id},
        )
        response.raise_for_status()
        context.report_progress(100)

        logger.info(f"{notification_type} notification delivered ({response.status_code})")
        return JobResult.ok(
            f"{notification_type} notification sent",
            data={
                "type": notification_type,
                "recipient": recipient,
                "urgency": urgency,
                "statusCode": response.status_code,
                "sentAt": sent_at,
            },
            started=started,
        )
