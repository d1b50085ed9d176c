"""
Queue catalogue and policy.

Every queue, the job kinds it accepts, and its scheduling policy
(priority, attempt ceiling, concurrency, backoff, cleanup limits) live here.
The (queue, job name) pairs in JOB_KINDS are the only ones the registry and
the backends accept.
"""

import os
from dataclasses import dataclass, replace
from typing import NamedTuple, Optional

from .errors import UnknownJobKindError


# Queue names
WEBHOOK_QUEUE = "webhook"
ORDER_PROCESSING_QUEUE = "order-processing"
EMAIL_QUEUE = "email"
NOTIFICATIONS_QUEUE = "notifications"
PRODUCT_SYNC_QUEUE = "product-sync"
BACKGROUND_QUEUE = "background"

# Job names
SEND_EMAIL = "send-email"
SEND_BULK_EMAIL = "send-bulk-email"
PROCESS_WEBHOOK = "process-webhook"
VERIFY_WEBHOOK = "verify-webhook"
SYNC_PRODUCT = "sync-product"
SYNC_ALL_PRODUCTS = "sync-all-products"
CLEANUP_DATA = "cleanup-data"
GENERATE_REPORT = "generate-report"
PROCESS_ORDER = "process-order"
FULFILL_ORDER = "fulfill-order"
SEND_NOTIFICATION = "send-notification"

# Retry defaults (exponential backoff, milliseconds)
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_MS = 2000

# Stall detection
STALLED_INTERVAL_SECONDS = 30.0
MAX_STALLED_COUNT = 1
STALE_ACTIVE_TIMEOUT_SECONDS = 300.0

# Polling backend
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
POLLING_BATCH_SIZE = 10

# Cleanup of terminal jobs
DEFAULT_CLEANUP_AGE_MS = 24 * 60 * 60 * 1000
DEFAULT_CLEAN_COMPLETED_LIMIT = 10
DEFAULT_CLEAN_FAILED_LIMIT = 50


class JobKind(NamedTuple):
    """A (queue, job name) pair selecting one processor."""

    queue_name: str
    job_name: str

    def __str__(self) -> str:
        return f"{self.queue_name}/{self.job_name}"


@dataclass(frozen=True)
class QueueSettings:
    """Scheduling policy for one queue."""

    name: str
    job_names: tuple[str, ...]
    priority: int
    max_attempts: int
    concurrency: int
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    clean_completed_limit: int = DEFAULT_CLEAN_COMPLETED_LIMIT
    clean_failed_limit: int = DEFAULT_CLEAN_FAILED_LIMIT

    def accepts(self, job_name: str) -> bool:
        return job_name in self.job_names


QUEUE_SETTINGS: dict[str, QueueSettings] = {
    WEBHOOK_QUEUE: QueueSettings(
        name=WEBHOOK_QUEUE,
        job_names=(PROCESS_WEBHOOK, VERIFY_WEBHOOK),
        priority=10,
        max_attempts=5,
        concurrency=3,
    ),
    ORDER_PROCESSING_QUEUE: QueueSettings(
        name=ORDER_PROCESSING_QUEUE,
        job_names=(PROCESS_ORDER, FULFILL_ORDER),
        priority=8,
        max_attempts=5,
        concurrency=3,
    ),
    EMAIL_QUEUE: QueueSettings(
        name=EMAIL_QUEUE,
        job_names=(SEND_EMAIL, SEND_BULK_EMAIL),
        priority=5,
        max_attempts=3,
        concurrency=5,
    ),
    NOTIFICATIONS_QUEUE: QueueSettings(
        name=NOTIFICATIONS_QUEUE,
        job_names=(SEND_NOTIFICATION,),
        priority=5,
        max_attempts=3,
        concurrency=5,
    ),
    PRODUCT_SYNC_QUEUE: QueueSettings(
        name=PRODUCT_SYNC_QUEUE,
        job_names=(SYNC_PRODUCT, SYNC_ALL_PRODUCTS),
        priority=2,
        max_attempts=2,
        concurrency=2,
    ),
    BACKGROUND_QUEUE: QueueSettings(
        name=BACKGROUND_QUEUE,
        job_names=(CLEANUP_DATA, GENERATE_REPORT),
        priority=0,
        max_attempts=1,
        concurrency=1,
    ),
}

JOB_KINDS: frozenset[JobKind] = frozenset(
    JobKind(settings.name, job_name)
    for settings in QUEUE_SETTINGS.values()
    for job_name in settings.job_names
)

# Per-environment overrides of cleanup limits
ENVIRONMENT_PROFILES = {
    "production": {"clean_completed_limit": 50, "clean_failed_limit": 100},
    "test": {"clean_completed_limit": 1, "clean_failed_limit": 1},
}


def get_queue_settings(
    queue_name: str,
    settings: Optional[dict[str, QueueSettings]] = None,
) -> QueueSettings:
    """
    Look up the settings for a queue.

    Raises:
        UnknownJobKindError: If the queue is not in the catalogue
    """
    catalogue = settings if settings is not None else QUEUE_SETTINGS
    try:
        return catalogue[queue_name]
    except KeyError:
        raise UnknownJobKindError(queue_name) from None


def validate_job_kind(
    queue_name: str,
    job_name: str,
    settings: Optional[dict[str, QueueSettings]] = None,
) -> QueueSettings:
    """
    Ensure (queue_name, job_name) is a catalogued job kind.

    Returns:
        The queue's settings

    Raises:
        UnknownJobKindError: For unknown queues or job names
    """
    queue_settings = get_queue_settings(queue_name, settings)
    if not queue_settings.accepts(job_name):
        raise UnknownJobKindError(queue_name, job_name)
    return queue_settings


def load_queue_settings(app_env: Optional[str] = None) -> dict[str, QueueSettings]:
    """
    Queue settings with the APP_ENV profile applied.

    Args:
        app_env: Environment name; defaults to the APP_ENV variable
    """
    app_env = (app_env or os.getenv("APP_ENV", "development")).lower()
    overrides = ENVIRONMENT_PROFILES.get(app_env)
    if not overrides:
        return dict(QUEUE_SETTINGS)
    return {
        name: replace(settings, **overrides)
        for name, settings in QUEUE_SETTINGS.items()
    }
