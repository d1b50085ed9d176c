"""
Email Processor Tests.

Delivery goes through a mocked EmailSender; SMTP itself is never contacted.
"""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from src.processors.email import (
    SendBulkEmailProcessor,
    SendEmailProcessor,
    SmtpEmailSender,
    render_template,
)
from src.queueing.config import EMAIL_QUEUE, SEND_BULK_EMAIL, SEND_EMAIL
from src.queueing.errors import NotFoundError, UnknownJobError, ValidationError


@pytest.fixture
def sender():
    sender = MagicMock()
    sender.send.return_value = "<msg-1@acme.example>"
    return sender


@pytest.fixture
def processor(sender) -> SendEmailProcessor:
    return SendEmailProcessor(sender, from_email="shop@acme.example")


class TestSendEmail:

    def test_plain_body(self, processor, sender, make_context):
        # Setup
        context = make_context(EMAIL_QUEUE, SEND_EMAIL)
        payload = {"to": "jon@example.com", "subject": "Hello", "body": "Hi Jon"}

        # Action
        result = processor(payload, context)

        # Assertion
        message = sender.send.call_args.args[0]
        assert message["To"] == "jon@example.com"
        assert message["From"] == "shop@acme.example"
        assert message.get_content().strip() == "Hi Jon"
        assert result.data["messageId"] == "<msg-1@acme.example>"
        assert result.data["recipient"] == "jon@example.com"
        assert context.progress == 100

    def test_template_rendered(self, processor, sender, make_context):
        payload = {
            "to": "jon@example.com",
            "subject": "Your order",
            "template": "order-confirmation",
            "templateData": {"customerName": "Jon", "orderNumber": "1001",
                             "totalPrice": "59.98", "currency": "USD"},
        }

        processor(payload, make_context(EMAIL_QUEUE, SEND_EMAIL))

        message = sender.send.call_args.args[0]
        assert message["Subject"] == "Your order"
        text = message.get_body(preferencelist=("plain",)).get_content()
        html = message.get_body(preferencelist=("html",)).get_content()
        assert "Thank you for your order #1001" in text
        assert "59.98 USD" in text
        assert "<strong>#1001</strong>" in html

    def test_cc_and_multiple_recipients(self, processor, sender, make_context):
        payload = {
            "to": ["jon@example.com", "arya@example.com"],
            "cc": "sansa@example.com",
            "subject": "Hi",
            "htmlBody": "<p>Hi</p>",
        }

        result = processor(payload, make_context(EMAIL_QUEUE, SEND_EMAIL))

        message = sender.send.call_args.args[0]
        assert message["To"] == "jon@example.com, arya@example.com"
        assert message["Cc"] == "sansa@example.com"
        assert result.data["recipient"] == "jon@example.com, arya@example.com"

    @pytest.mark.parametrize("payload", [
        {"subject": "Hi", "body": "x"},
        {"to": "jon@example.com", "body": "x"},
    ])
    def test_missing_required_field(self, processor, sender, make_context, payload):
        with pytest.raises(ValidationError) as exc_info:
            processor(payload, make_context(EMAIL_QUEUE, SEND_EMAIL))

        assert exc_info.value.code == "MISSING_FIELD"
        sender.send.assert_not_called()

    def test_no_content(self, processor, make_context):
        with pytest.raises(ValidationError):
            processor({"to": "jon@example.com", "subject": "Hi"}, make_context(EMAIL_QUEUE, SEND_EMAIL))

    @pytest.mark.parametrize("address", ["not-an-email", "jon@localhost", "jon @example.com"])
    def test_invalid_address(self, processor, sender, make_context, address):
        payload = {"to": address, "subject": "Hi", "body": "x"}

        with pytest.raises(ValidationError) as exc_info:
            processor(payload, make_context(EMAIL_QUEUE, SEND_EMAIL))

        assert exc_info.value.code == "INVALID_EMAIL"
        assert exc_info.value.retryable is False
        sender.send.assert_not_called()

    def test_invalid_bcc(self, processor, make_context):
        payload = {"to": "jon@example.com", "bcc": ["bad"], "subject": "Hi", "body": "x"}

        with pytest.raises(ValidationError) as exc_info:
            processor(payload, make_context(EMAIL_QUEUE, SEND_EMAIL))

        assert exc_info.value.context["field"] == "bcc"

    def test_unknown_template(self, processor, make_context):
        payload = {"to": "jon@example.com", "subject": "Hi", "template": "missing"}

        with pytest.raises(NotFoundError) as exc_info:
            processor(payload, make_context(EMAIL_QUEUE, SEND_EMAIL))

        assert exc_info.value.code == "TEMPLATE_NOT_FOUND"

    def test_smtp_failure_propagates(self, processor, sender, make_context):
        """The worker pool classifies SMTP errors; the processor does not."""
        sender.send.side_effect = smtplib.SMTPServerDisconnected("gone")
        payload = {"to": "jon@example.com", "subject": "Hi", "body": "x"}

        with pytest.raises(smtplib.SMTPServerDisconnected):
            processor(payload, make_context(EMAIL_QUEUE, SEND_EMAIL))


class TestRenderTemplate:

    def test_unknown_placeholders_kept(self):
        rendered = render_template("welcome", {"customerName": "Jon"})

        assert rendered["text"].startswith("Hi Jon,")
        assert "${storeName}" in rendered["subject"]


class TestSendBulkEmail:

    def test_partial_failure_reported(self, sender, make_context):
        # Setup
        sender.send.side_effect = ["<a>", smtplib.SMTPRecipientsRefused({}), "<c>"]
        processor = SendBulkEmailProcessor(sender)
        payload = {
            "recipients": ["a@example.com", "b@example.com", "c@example.com"],
            "subject": "Sale",
            "body": "50% off",
        }

        # Action
        result = processor(payload, make_context(EMAIL_QUEUE, SEND_BULK_EMAIL))

        # Assertion
        assert [entry["recipient"] for entry in result.data["sent"]] == ["a@example.com", "c@example.com"]
        assert [entry["recipient"] for entry in result.data["failed"]] == ["b@example.com"]
        assert sender.send.call_count == 3

    def test_one_message_per_recipient(self, sender, make_context):
        processor = SendBulkEmailProcessor(sender)
        payload = {"recipients": ["a@example.com", "b@example.com"], "subject": "Sale", "body": "x"}

        processor(payload, make_context(EMAIL_QUEUE, SEND_BULK_EMAIL))

        recipients = [call.args[0]["To"] for call in sender.send.call_args_list]
        assert recipients == ["a@example.com", "b@example.com"]

    def test_all_failed_is_retryable(self, sender, make_context):
        sender.send.side_effect = smtplib.SMTPServerDisconnected("down")
        processor = SendBulkEmailProcessor(sender)
        payload = {"recipients": ["a@example.com", "b@example.com"], "subject": "Sale", "body": "x"}

        with pytest.raises(UnknownJobError) as exc_info:
            processor(payload, make_context(EMAIL_QUEUE, SEND_BULK_EMAIL))

        assert exc_info.value.code == "BULK_EMAIL_FAILED"
        assert exc_info.value.retryable is True
        assert len(exc_info.value.context["failures"]) == 2

    def test_invalid_recipient_rejects_whole_job(self, sender, make_context):
        processor = SendBulkEmailProcessor(sender)
        payload = {"recipients": ["a@example.com", "nope"], "subject": "Sale", "body": "x"}

        with pytest.raises(ValidationError):
            processor(payload, make_context(EMAIL_QUEUE, SEND_BULK_EMAIL))

        sender.send.assert_not_called()


class TestSmtpEmailSender:

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SMTP_HOST", "smtp.acme.example")
        monkeypatch.setenv("SMTP_PORT", "2525")
        monkeypatch.setenv("SMTP_USERNAME", "mailer")
        monkeypatch.setenv("SMTP_PASSWORD", "secret")
        monkeypatch.setenv("SMTP_USE_TLS", "false")

        sender = SmtpEmailSender.from_env()

        assert sender.host == "smtp.acme.example"
        assert sender.port == 2525
        assert sender.username == "mailer"
        assert sender.use_tls is False

    def test_send_logs_in_and_delivers(self):
        sender = SmtpEmailSender("smtp.acme.example", username="mailer", password="secret")
        message = MagicMock()
        message.__contains__.return_value = True
        message.__getitem__.return_value = "<given@acme.example>"

        with patch("src.processors.email.smtplib.SMTP") as smtp_cls:
            message_id = sender.send(message)

        smtp = smtp_cls.return_value.__enter__.return_value
        smtp.starttls.assert_called_once()
        smtp.login.assert_called_once_with("mailer", "secret")
        smtp.send_message.assert_called_once_with(message)
        assert message_id == "<given@acme.example>"
