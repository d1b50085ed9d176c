"""
Retry Policy.

Shared decision logic for every worker pool:
- classify an exception into a structured JobError
- decide whether a failed attempt is retried or terminal
- compute the exponential backoff delay

Classification works on exception types only. Exceptions that match none of
the known types are reported as non-retryable UNHANDLED_EXCEPTION failures,
so a programming error in a processor fails fast instead of burning retries.

Backoff:
    delay = base * (2 ^ (attempts - 1))
    With the 2000ms base and attempts counted after the failed run:
    2s -> 4s -> 8s ...
"""

import logging
import smtplib
import socket
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .config import DEFAULT_BACKOFF_BASE_MS
from .entities import JobRecord
from .errors import (
    AuthError,
    DuplicateError,
    JobError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    UnknownJobError,
    ValidationError,
)


logger = logging.getLogger(__name__)


UNIQUE_CONSTRAINT_ERRORS = frozenset({"SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY"})


@dataclass
class RetryDecision:
    """Outcome of evaluating one failed attempt."""

    retry: bool
    reason: str
    delay_ms: int = 0

    def retry_at(self, now: datetime) -> Optional[datetime]:
        if not self.retry:
            return None
        return now + timedelta(milliseconds=self.delay_ms)


def error_from_status(
    status_code: int,
    message: str,
    context: Optional[dict[str, Any]] = None,
    retry_after: Optional[str] = None,
) -> JobError:
    """
    Map an HTTP status from a remote service to a JobError.

    401/403 -> AuthError, 404 -> NotFoundError, 429 -> RateLimitedError,
    5xx -> NetworkError, other 4xx -> ValidationError.
    """
    context = dict(context or {})
    context["status_code"] = status_code

    if status_code in (401, 403):
        return AuthError(message, code="REMOTE_AUTH_FAILED", context=context)
    if status_code == 404:
        return NotFoundError(message, context=context)
    if status_code == 429:
        if retry_after is not None:
            context["retry_after"] = retry_after
        return RateLimitedError(message, context=context)
    if status_code >= 500:
        return NetworkError(message, code="REMOTE_SERVER_ERROR", context=context)
    return ValidationError(message, code="REMOTE_REJECTED", context=context)


def classify_exception(exc: BaseException) -> Optional[JobError]:
    """
    Map an exception to a JobError by type.

    Returns:
        The structured error, or None when the exception type is not recognised
    """
    if isinstance(exc, JobError):
        return exc

    context = {"exception_type": type(exc).__name__}

    if isinstance(exc, httpx.HTTPStatusError):
        return error_from_status(
            exc.response.status_code,
            str(exc),
            context,
            retry_after=exc.response.headers.get("Retry-After"),
        )
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return NetworkError(str(exc), context=context)

    if isinstance(exc, smtplib.SMTPAuthenticationError):
        return AuthError(str(exc), code="SMTP_AUTH_FAILED", context=context)
    if isinstance(exc, smtplib.SMTPRecipientsRefused):
        return ValidationError(str(exc), code="RECIPIENT_REFUSED", context=context)
    if isinstance(exc, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
        return NetworkError(str(exc), code="SMTP_UNAVAILABLE", context=context)

    if isinstance(exc, (RedisConnectionError, RedisTimeoutError)):
        return NetworkError(str(exc), code="REDIS_UNAVAILABLE", context=context)

    if isinstance(exc, sqlite3.IntegrityError):
        # Only uniqueness means "already recorded"; NOT NULL, FOREIGN KEY and
        # CHECK failures are bad writes
        if getattr(exc, "sqlite_errorname", None) in UNIQUE_CONSTRAINT_ERRORS:
            return DuplicateError(str(exc), context=context)
        return ValidationError(str(exc), code="INTEGRITY_ERROR", context=context)
    if isinstance(exc, sqlite3.OperationalError):
        return UnknownJobError(str(exc), code="DATABASE_ERROR", context=context)

    if isinstance(exc, (ConnectionError, socket.timeout, TimeoutError)):
        return NetworkError(str(exc), context=context)

    return None


class RetryPolicy:
    """
    Decides retry-vs-fail for failed attempts.

    Processors never retry themselves; the worker pool asks this policy.
    """

    def __init__(self, backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS):
        """
        Args:
            backoff_base_ms: Base delay for exponential backoff
        """
        self.backoff_base_ms = backoff_base_ms

    def calculate_backoff(self, attempts: int) -> int:
        """Delay in milliseconds after `attempts` failed runs."""
        return self.backoff_base_ms * (2 ** max(attempts - 1, 0))

    def classify(self, exc: BaseException) -> JobError:
        """
        Structured error for any exception raised by a processor.

        Unrecognised exceptions become non-retryable.
        """
        error = classify_exception(exc)
        if error is not None:
            return error

        logger.error(f"Unhandled processor exception: {type(exc).__name__}: {exc}")
        return UnknownJobError(
            str(exc) or type(exc).__name__,
            code="UNHANDLED_EXCEPTION",
            retryable=False,
            context={"exception_type": type(exc).__name__},
        )

    def evaluate(self, job: JobRecord, error: JobError) -> RetryDecision:
        """
        Decide what happens after a failed attempt.

        `job.attempts` already includes the attempt that just failed.
        """
        if not error.retryable:
            return RetryDecision(retry=False, reason=f"non-retryable {error.code}")

        if job.attempts >= job.max_attempts:
            return RetryDecision(
                retry=False,
                reason=f"attempts exhausted ({job.attempts}/{job.max_attempts})",
            )

        delay_ms = self.calculate_backoff(job.attempts)

        # Never retry sooner than a remote Retry-After asked for
        retry_after = error.context.get("retry_after")
        if retry_after is not None:
            try:
                delay_ms = max(delay_ms, int(float(retry_after) * 1000))
            except (TypeError, ValueError):
                logger.debug(f"Ignoring unparseable Retry-After: {retry_after!r}")

        return RetryDecision(
            retry=True,
            reason=f"attempt {job.attempts}/{job.max_attempts} failed",
            delay_ms=delay_ms,
        )
