"""
Tests for retry classification and backoff.
"""

import smtplib
import sqlite3
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.queueing import (
    AuthError,
    DuplicateError,
    ErrorKind,
    JobRecord,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    RetryPolicy,
    UnknownJobError,
    ValidationError,
)
from src.queueing.retry_policy import RetryDecision, classify_exception, error_from_status


NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_job(attempts: int, max_attempts: int = 3) -> JobRecord:
    job = JobRecord.create("email", "send-email", {}, priority=5, max_attempts=max_attempts, now=NOW)
    job.attempts = attempts
    return job


def http_status_error(status_code: int, headers: dict = None) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://shop.example.com/admin/api/orders.json")
    response = httpx.Response(status_code, headers=headers, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


def integrity_error(statement: str) -> sqlite3.IntegrityError:
    """Run a statement that violates a constraint and return the raised error."""
    conn = sqlite3.connect(":memory:")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("CREATE TABLE orders (id INTEGER PRIMARY KEY, shopify_order_id TEXT NOT NULL UNIQUE)")
    conn.execute(
        "CREATE TABLE order_items (id INTEGER PRIMARY KEY, "
        "order_id INTEGER REFERENCES orders(id))"
    )
    conn.execute("INSERT INTO orders (shopify_order_id) VALUES ('123')")
    try:
        conn.execute(statement)
    except sqlite3.IntegrityError as e:
        return e
    finally:
        conn.close()
    raise AssertionError(f"no constraint violated by: {statement}")


class TestBackoff:

    def test_backoff_doubles(self):
        policy = RetryPolicy(backoff_base_ms=2000)

        assert [policy.calculate_backoff(n) for n in (1, 2, 3)] == [2000, 4000, 8000]

    def test_decision_retry_at(self):
        decision = RetryDecision(retry=True, reason="x", delay_ms=1500)

        assert decision.retry_at(NOW) == NOW + timedelta(milliseconds=1500)
        assert RetryDecision(retry=False, reason="x").retry_at(NOW) is None


class TestEvaluate:

    def test_retryable_error_with_budget_is_retried(self):
        decision = RetryPolicy().evaluate(make_job(attempts=1), NetworkError("reset"))

        assert decision.retry is True
        assert decision.delay_ms == 2000

    def test_exhausted_attempts_not_retried(self):
        decision = RetryPolicy().evaluate(make_job(attempts=3), NetworkError("reset"))

        assert decision.retry is False
        assert "exhausted" in decision.reason

    def test_non_retryable_error_not_retried(self):
        decision = RetryPolicy().evaluate(make_job(attempts=1), ValidationError("bad"))

        assert decision.retry is False
        assert "VALIDATION_ERROR" in decision.reason

    def test_retry_after_raises_delay(self):
        error = RateLimitedError("slow down", context={"retry_after": "12.5"})

        decision = RetryPolicy().evaluate(make_job(attempts=1), error)

        assert decision.delay_ms == 12500

    def test_retry_after_never_lowers_delay(self):
        error = RateLimitedError("slow down", context={"retry_after": "1"})

        assert RetryPolicy().evaluate(make_job(attempts=2), error).delay_ms == 4000

    def test_unparseable_retry_after_ignored(self):
        error = RateLimitedError("slow down", context={"retry_after": "Wed, 21 Oct 2026 07:28:00 GMT"})

        assert RetryPolicy().evaluate(make_job(attempts=1), error).delay_ms == 2000


class TestErrorKinds:

    @pytest.mark.parametrize(
        "error_cls, retryable",
        [
            (ValidationError, False),
            (NotFoundError, False),
            (AuthError, False),
            (NetworkError, True),
            (RateLimitedError, True),
            (DuplicateError, False),
            (UnknownJobError, True),
        ],
    )
    def test_default_retryable_by_kind(self, error_cls, retryable):
        assert error_cls("x").retryable is retryable

    def test_to_dict(self):
        error = NotFoundError("no template", code="TEMPLATE_NOT_FOUND", context={"template": "x"})

        assert error.to_dict() == {
            "message": "no template",
            "code": "TEMPLATE_NOT_FOUND",
            "kind": ErrorKind.NOT_FOUND.value,
            "retryable": False,
            "context": {"template": "x"},
        }


class TestClassification:

    @pytest.mark.parametrize(
        "status_code, error_cls",
        [
            (401, AuthError),
            (403, AuthError),
            (404, NotFoundError),
            (422, ValidationError),
            (429, RateLimitedError),
            (500, NetworkError),
            (503, NetworkError),
        ],
    )
    def test_error_from_status(self, status_code, error_cls):
        error = error_from_status(status_code, "remote failed")

        assert isinstance(error, error_cls)
        assert error.context["status_code"] == status_code

    def test_http_status_error_carries_retry_after(self):
        error = classify_exception(http_status_error(429, {"Retry-After": "7"}))

        assert isinstance(error, RateLimitedError)
        assert error.context["retry_after"] == "7"

    def test_transport_errors_are_network(self):
        request = httpx.Request("GET", "https://example.com")

        assert isinstance(classify_exception(httpx.ConnectTimeout("t", request=request)), NetworkError)
        assert isinstance(classify_exception(httpx.ConnectError("c", request=request)), NetworkError)

    def test_smtp_errors(self):
        auth = classify_exception(smtplib.SMTPAuthenticationError(535, b"bad credentials"))
        refused = classify_exception(smtplib.SMTPRecipientsRefused({"a@example.com": (550, b"no")}))
        down = classify_exception(smtplib.SMTPServerDisconnected("gone"))

        assert isinstance(auth, AuthError)
        assert isinstance(refused, ValidationError)
        assert isinstance(down, NetworkError)
        assert down.code == "SMTP_UNAVAILABLE"

    def test_redis_and_socket_errors_are_network(self):
        assert isinstance(classify_exception(RedisConnectionError("refused")), NetworkError)
        assert isinstance(classify_exception(ConnectionRefusedError()), NetworkError)
        assert isinstance(classify_exception(TimeoutError()), NetworkError)

    def test_unique_violation_is_duplicate(self):
        error = classify_exception(integrity_error("INSERT INTO orders (shopify_order_id) VALUES ('123')"))

        assert isinstance(error, DuplicateError)
        assert error.retryable is False

    @pytest.mark.parametrize(
        "statement",
        [
            "INSERT INTO orders (shopify_order_id) VALUES (NULL)",
            "INSERT INTO order_items (order_id) VALUES (999)",
        ],
        ids=["not_null", "foreign_key"],
    )
    def test_other_integrity_violations_are_validation_errors(self, statement):
        error = classify_exception(integrity_error(statement))

        assert isinstance(error, ValidationError)
        assert error.code == "INTEGRITY_ERROR"
        assert error.retryable is False

    def test_integrity_error_without_sqlite_code_is_not_duplicate(self):
        error = classify_exception(sqlite3.IntegrityError("constraint failed"))

        assert isinstance(error, ValidationError)

    def test_job_error_passes_through(self):
        original = AuthError("nope")

        assert classify_exception(original) is original

    def test_unknown_exception_not_classified(self):
        assert classify_exception(ZeroDivisionError()) is None

    def test_policy_marks_unknown_exception_non_retryable(self):
        error = RetryPolicy().classify(AttributeError("'NoneType' object has no attribute 'id'"))

        assert isinstance(error, UnknownJobError)
        assert error.code == "UNHANDLED_EXCEPTION"
        assert error.retryable is False
        assert error.context["exception_type"] == "AttributeError"
