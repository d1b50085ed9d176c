"""
Email queue processors.

- send-email: one message, plain body, HTML body or a named template
- send-bulk-email: the same message to many recipients; per-recipient
  failures are reported, not raised, unless nothing could be sent

Delivery goes through an EmailSender; SmtpEmailSender talks to the server
configured by SMTP_HOST / SMTP_PORT / SMTP_USERNAME / SMTP_PASSWORD.
smtplib exceptions propagate untouched and are classified by the worker
pool (auth failure: fail, disconnect: retry).
"""

import logging
import os
import re
import smtplib
import time
from email.message import EmailMessage
from email.utils import make_msgid
from string import Template
from typing import Optional, Protocol

from src.queueing.entities import JobResult, to_iso, utc_now
from src.queueing.errors import NotFoundError, UnknownJobError, ValidationError
from src.queueing.registry import JobContext, JobProcessor

from .common import as_list, require_fields


logger = logging.getLogger(__name__)


EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
DEFAULT_FROM_EMAIL = "noreply@yourstore.com"
SMTP_TIMEOUT_SECONDS = 30


# =============================================================================
# Templates
# =============================================================================


EMAIL_TEMPLATES: dict[str, dict[str, str]] = {
    "order-confirmation": {
        "subject": "Order Confirmation #${orderNumber}",
        "text": (
            "Hi ${customerName},\n\n"
            "Thank you for your order #${orderNumber}.\n"
            "Total: ${totalPrice} ${currency}\n\n"
            "We will let you know when it ships."
        ),
        "html": (
            "<h1>Thank you for your order!</h1>"
            "<p>Hi ${customerName},</p>"
            "<p>Order <strong>#${orderNumber}</strong> total: ${totalPrice} ${currency}</p>"
        ),
    },
    "welcome": {
        "subject": "Welcome to ${storeName}",
        "text": "Hi ${customerName},\n\nWelcome to ${storeName}! We're glad to have you.",
        "html": "<h1>Welcome to ${storeName}!</h1><p>Hi ${customerName}, we're glad to have you.</p>",
    },
    "password-reset": {
        "subject": "Reset your password",
        "text": "Hi ${customerName},\n\nReset your password here: ${resetUrl}",
        "html": "<p>Hi ${customerName},</p><p><a href=\"${resetUrl}\">Reset your password</a></p>",
    },
}


def render_template(name: str, data: Optional[dict] = None) -> dict[str, str]:
    """
    Render a named template; unknown placeholders are left as-is.

    Raises:
        NotFoundError: For an unknown template name
    """
    template = EMAIL_TEMPLATES.get(name)
    if template is None:
        raise NotFoundError(
            f"Email template not found: {name}",
            code="TEMPLATE_NOT_FOUND",
            context={"template": name},
        )
    values = {key: str(value) for key, value in (data or {}).items()}
    return {part: Template(text).safe_substitute(values) for part, text in template.items()}


def validate_addresses(field_name: str, addresses: list) -> None:
    invalid = [address for address in addresses
               if not isinstance(address, str) or not EMAIL_PATTERN.match(address)]
    if invalid:
        raise ValidationError(
            f"Invalid email address in {field_name}: {', '.join(map(str, invalid))}",
            code="INVALID_EMAIL",
            context={"field": field_name, "invalid": invalid},
        )


# =============================================================================
# Senders
# =============================================================================


class EmailSender(Protocol):
    def send(self, message: EmailMessage) -> str:
        """Deliver the message and return its Message-ID."""
        ...


class SmtpEmailSender:
    """Delivers through one SMTP connection per message."""

    def __init__(
        self,
        host: str,
        port: int = 587,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = SMTP_TIMEOUT_SECONDS,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> "SmtpEmailSender":
        return cls(
            host=os.getenv("SMTP_HOST", "localhost"),
            port=int(os.getenv("SMTP_PORT", "587")),
            username=os.getenv("SMTP_USERNAME") or None,
            password=os.getenv("SMTP_PASSWORD") or None,
            use_tls=os.getenv("SMTP_USE_TLS", "true").lower() == "true",
        )

    def send(self, message: EmailMessage) -> str:
        if "Message-ID" not in message:
            message["Message-ID"] = make_msgid()

        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            if self.use_tls:
                smtp.starttls()
            if self.username and self.password:
                smtp.login(self.username, self.password)
            smtp.send_message(message)

        logger.info(f"Email sent via {self.host}:{self.port} to {message['To']}")
        return message["Message-ID"]


# =============================================================================
# Processors
# =============================================================================


def _build_message(payload: dict, to: list[str], from_email: str) -> EmailMessage:
    """Validate content fields and assemble the message for `to`."""
    body = payload.get("body")
    html_body = payload.get("htmlBody")
    subject = payload.get("subject")

    if payload.get("template"):
        rendered = render_template(payload["template"], payload.get("templateData"))
        subject = subject or rendered["subject"]
        body = body or rendered["text"]
        html_body = html_body or rendered["html"]
    elif not body and not html_body:
        raise ValidationError(
            "One of body, htmlBody or template is required",
            code="MISSING_FIELD",
            context={"fields": ["body", "htmlBody", "template"]},
        )

    message = EmailMessage()
    message["From"] = payload.get("from") or from_email
    message["To"] = ", ".join(to)
    message["Subject"] = subject
    for header, key in (("Cc", "cc"), ("Bcc", "bcc")):
        addresses = as_list(payload.get(key))
        if addresses:
            message[header] = ", ".join(addresses)

    message.set_content(body or "")
    if html_body:
        message.add_alternative(html_body, subtype="html")
    return message


def _validate_copies(payload: dict) -> None:
    for key in ("cc", "bcc"):
        validate_addresses(key, as_list(payload.get(key)))


class SendEmailProcessor(JobProcessor):
    """send-email"""

    def __init__(self, sender: EmailSender, from_email: Optional[str] = None):
        self.sender = sender
        self.from_email = from_email or os.getenv("FROM_EMAIL", DEFAULT_FROM_EMAIL)

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        require_fields(payload, "to", "subject")
        recipients = as_list(payload["to"])
        validate_addresses("to", recipients)
        _validate_copies(payload)
        context.report_progress(25)

        message = _build_message(payload, recipients, self.from_email)
        context.report_progress(50)

        context.report_progress(75)
        message_id = self.sender.send(message)
        context.report_progress(100)

        return JobResult.ok(
            f"Email sent to {', '.join(recipients)}",
            data={
                "messageId": message_id,
                "recipient": ", ".join(recipients),
                "subject": message["Subject"],
                "sentAt": to_iso(utc_now()),
            },
            started=started,
        )


class SendBulkEmailProcessor(JobProcessor):
    """send-bulk-email: one message per recipient."""

    def __init__(self, sender: EmailSender, from_email: Optional[str] = None):
        self.sender = sender
        self.from_email = from_email or os.getenv("FROM_EMAIL", DEFAULT_FROM_EMAIL)

    def process(self, payload: dict, context: JobContext) -> JobResult:
        started = time.monotonic()
        require_fields(payload, "recipients", "subject")
        recipients = as_list(payload["recipients"])
        validate_addresses("recipients", recipients)
        _validate_copies(payload)
        context.report_progress(25)

        sent, failures = [], []
        for index, recipient in enumerate(recipients, start=1):
            message = _build_message(payload, [recipient], self.from_email)
            try:
                sent.append({"recipient": recipient, "messageId": self.sender.send(message)})
            except (smtplib.SMTPException, OSError) as e:
                logger.warning(f"Bulk email to {recipient} failed: {e}")
                failures.append({"recipient": recipient, "error": str(e)})
            context.report_progress(25 + int(75 * index / len(recipients)))

        if not sent:
            raise UnknownJobError(
                f"Bulk email failed for all {len(recipients)} recipients",
                code="BULK_EMAIL_FAILED",
                context={"failures": failures},
            )

        return JobResult.ok(
            f"Bulk email sent to {len(sent)}/{len(recipients)} recipients",
            data={"sent": sent, "failed": failures, "subject": payload["subject"]},
            started=started,
        )
