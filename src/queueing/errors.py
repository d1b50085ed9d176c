"""
Queue and job exceptions.

Two families:
- QueueError: misuse of the queue layer itself (unknown job kind, lost
  ownership of a job, unreachable backend). Raised to callers.
- JobError: structured failure raised by processors. Carries an explicit
  ErrorKind, a machine-readable code and a retryable flag; the worker pool
  is the only place that acts on it.
"""

from enum import Enum
from typing import Any, Optional


class QueueError(Exception):
    """Base exception for all queue-layer errors."""
    pass


class JobNotFoundError(QueueError):
    """Raised when a requested job does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class UnknownJobKindError(QueueError):
    """
    Raised for a (queue, job name) pair outside the job catalogue.

    Also raised for an unknown queue name when job_name is None.
    """

    def __init__(self, queue_name: str, job_name: Optional[str] = None):
        self.queue_name = queue_name
        self.job_name = job_name
        if job_name is None:
            message = f"Unknown queue: {queue_name}"
        else:
            message = f"Unknown job kind: {queue_name}/{job_name}"
        super().__init__(message)


class ProcessorAlreadyRegisteredError(QueueError):
    """Raised when a second processor is registered for the same job kind."""

    def __init__(self, queue_name: str, job_name: str):
        self.queue_name = queue_name
        self.job_name = job_name
        super().__init__(f"Processor already registered for {queue_name}/{job_name}")


class ConcurrencyViolationError(QueueError):
    """
    Raised when a job transition finds the job in an unexpected state.

    Used for claims (the job was taken by another worker) and for terminal
    transitions by a worker that no longer owns the job (e.g. after stall
    recovery handed it to someone else).
    """

    def __init__(self, job_id: str, expected_status: str, actual_status: Optional[str]):
        self.job_id = job_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"Concurrency violation for job {job_id}: "
            f"expected status '{expected_status}', got '{actual_status}'"
        )


class BackendUnavailableError(QueueError):
    """Raised when the queue backend cannot be reached."""

    def __init__(self, backend: str, reason: str):
        self.backend = backend
        self.reason = reason
        super().__init__(f"Queue backend '{backend}' unavailable: {reason}")


# =============================================================================
# Job errors (raised by processors)
# =============================================================================


class ErrorKind(str, Enum):
    """Failure categories; each has a fixed default retry decision."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    AUTH = "auth"
    NETWORK = "network"
    RATE_LIMITED = "rate_limited"
    DUPLICATE = "duplicate"
    UNKNOWN = "unknown"


RETRYABLE_BY_KIND = {
    ErrorKind.VALIDATION: False,
    ErrorKind.NOT_FOUND: False,
    ErrorKind.AUTH: False,
    ErrorKind.NETWORK: True,
    ErrorKind.RATE_LIMITED: True,
    ErrorKind.DUPLICATE: False,
    ErrorKind.UNKNOWN: True,
}


class JobError(Exception):
    """
    Structured processor failure: {message, code, retryable, context}.

    Subclasses fix the kind and default code; `retryable` defaults from the
    kind and may be overridden at the raise site.
    """

    kind = ErrorKind.UNKNOWN
    default_code = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        retryable: Optional[bool] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.retryable = RETRYABLE_BY_KIND[self.kind] if retryable is None else retryable
        self.context = dict(context or {})
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "kind": self.kind.value,
            "retryable": self.retryable,
            "context": self.context,
        }


class ValidationError(JobError):
    """Malformed input or missing required field."""

    kind = ErrorKind.VALIDATION
    default_code = "VALIDATION_ERROR"


class NotFoundError(JobError):
    """Referenced template or resource does not exist."""

    kind = ErrorKind.NOT_FOUND
    default_code = "RESOURCE_NOT_FOUND"


class AuthError(JobError):
    """Credential, permission or signature failure."""

    kind = ErrorKind.AUTH
    default_code = "AUTH_ERROR"


class NetworkError(JobError):
    """Connection failure, timeout or remote server error."""

    kind = ErrorKind.NETWORK
    default_code = "NETWORK_ERROR"


class RateLimitedError(JobError):
    """Remote side asked us to slow down."""

    kind = ErrorKind.RATE_LIMITED
    default_code = "RATE_LIMITED"


class DuplicateError(JobError):
    """The work is already done; treated as satisfied, never retried."""

    kind = ErrorKind.DUPLICATE
    default_code = "DUPLICATE_RESOURCE"


class UnknownJobError(JobError):
    """Unclassified failure; retried until the attempt budget runs out."""

    kind = ErrorKind.UNKNOWN
    default_code = "UNKNOWN_ERROR"
