"""
Job Queue Core Module.

Queues with priorities, delays and exponential-backoff retries, served by
per-queue worker pools over one of two interchangeable backends:
- PollingQueueBackend: SQLite table scanned on an interval
- RedisQueueBackend: Redis sorted sets with stall detection
"""

from .entities import (
    JobStatus,
    JobState,
    JobRecord,
    JobOptions,
    JobResult,
    QueueCounts,
    StallReport,
)
from .errors import (
    QueueError,
    JobNotFoundError,
    UnknownJobKindError,
    ProcessorAlreadyRegisteredError,
    ConcurrencyViolationError,
    BackendUnavailableError,
    ErrorKind,
    JobError,
    ValidationError,
    NotFoundError,
    AuthError,
    NetworkError,
    RateLimitedError,
    DuplicateError,
    UnknownJobError,
)
from .config import JobKind, QueueSettings, QUEUE_SETTINGS, JOB_KINDS
from .backend import QueueBackend
from .polling_backend import PollingQueueBackend
from .broker_backend import RedisQueueBackend
from .retry_policy import RetryPolicy, RetryDecision
from .registry import JobContext, JobProcessor, ProcessorRegistry
from .worker_pool import WorkerPool, PoolState
from .supervisor import QueueSupervisor
from .service import QueueService, create_backend

__all__ = [
    # Entities
    "JobStatus",
    "JobState",
    "JobRecord",
    "JobOptions",
    "JobResult",
    "QueueCounts",
    "StallReport",
    # Errors
    "QueueError",
    "JobNotFoundError",
    "UnknownJobKindError",
    "ProcessorAlreadyRegisteredError",
    "ConcurrencyViolationError",
    "BackendUnavailableError",
    "ErrorKind",
    "JobError",
    "ValidationError",
    "NotFoundError",
    "AuthError",
    "NetworkError",
    "RateLimitedError",
    "DuplicateError",
    "UnknownJobError",
    # Config
    "JobKind",
    "QueueSettings",
    "QUEUE_SETTINGS",
    "JOB_KINDS",
    # Backends
    "QueueBackend",
    "PollingQueueBackend",
    "RedisQueueBackend",
    # Retry
    "RetryPolicy",
    "RetryDecision",
    # Registry
    "JobContext",
    "JobProcessor",
    "ProcessorRegistry",
    # Workers
    "WorkerPool",
    "PoolState",
    # Supervisor
    "QueueSupervisor",
    # Service
    "QueueService",
    "create_backend",
]
