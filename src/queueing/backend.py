"""
Queue backend contract.

Both backends (sqlite polling table and Redis broker) implement QueueBackend
with identical observable semantics:

- dequeue_next returns the highest-priority eligible job (scheduled_at <= now),
  ties broken by creation order, and claims it atomically so a job never has
  two active workers.
- Terminal transitions (mark_completed / mark_failed) and progress updates
  only apply while the caller still owns the job (status ACTIVE with the same
  attempt count it was claimed with).
- A failed attempt with retry budget goes back to PENDING with a later
  scheduled_at; otherwise it becomes FAILED.
- Paused queues keep accepting jobs but hand none out.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

from .config import (
    MAX_STALLED_COUNT,
    QUEUE_SETTINGS,
    QueueSettings,
    validate_job_kind,
)
from .entities import (
    JobOptions,
    JobRecord,
    JobState,
    JobStatus,
    QueueCounts,
    StallReport,
    utc_now,
)


logger = logging.getLogger(__name__)


StatusFilter = Union[JobStatus, JobState]

STALL_ERROR_MESSAGE = "job stalled more than allowable limit"


def parse_status_filter(value: str) -> StatusFilter:
    """
    Parse a status or pending sub-state name ("waiting", "failed", ...).

    Raises:
        ValueError: If the name is not a known status
    """
    for enum_cls in (JobStatus, JobState):
        try:
            return enum_cls(value)
        except ValueError:
            continue
    raise ValueError(f"Unknown job status: {value}")


class QueueBackend(ABC):
    """
    Abstract queue storage.

    Implementations must be safe to call from several worker threads at once.
    """

    name = "abstract"
    default_poll_interval = 1.0  # seconds between empty dequeues

    def __init__(
        self,
        queue_settings: Optional[dict[str, QueueSettings]] = None,
        clock: Callable[[], datetime] = utc_now,
        max_stalled_count: int = MAX_STALLED_COUNT,
    ):
        """
        Args:
            queue_settings: Queue catalogue used for validation and defaults
            clock: Returns the current aware UTC datetime
            max_stalled_count: Times a stalled job may be requeued before failing
        """
        self.queue_settings = queue_settings if queue_settings is not None else QUEUE_SETTINGS
        self.clock = clock
        self.max_stalled_count = max_stalled_count

    # =========================================================================
    # Shared helpers
    # =========================================================================

    def _now(self) -> datetime:
        return self.clock()

    def _new_job(
        self,
        queue_name: str,
        job_name: str,
        payload: dict,
        options: Optional[JobOptions],
    ) -> JobRecord:
        """Validate an enqueue request and build the pending JobRecord."""
        settings = validate_job_kind(queue_name, job_name, self.queue_settings)
        if not isinstance(payload, dict):
            raise TypeError(f"payload must be a dict, got {type(payload).__name__}")

        options = options or JobOptions()
        priority = settings.priority if options.priority is None else options.priority
        max_attempts = options.max_attempts or settings.max_attempts

        return JobRecord.create(
            queue_name=queue_name,
            name=job_name,
            payload=json.loads(json.dumps(payload)),
            priority=priority,
            max_attempts=max_attempts,
            now=self._now(),
            delay_ms=options.delay,
        )

    def _stall_outcome(self, job: JobRecord) -> JobStatus:
        """Where a stalled job goes next under the stall policy."""
        if job.stalled_count + 1 > self.max_stalled_count:
            return JobStatus.FAILED
        return JobStatus.PENDING

    # =========================================================================
    # Contract
    # =========================================================================

    @abstractmethod
    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict,
        options: Optional[JobOptions] = None,
    ) -> JobRecord:
        """
        Add a job to a queue.

        Raises:
            UnknownJobKindError: If (queue_name, job_name) is not catalogued
            BackendUnavailableError: If the backend cannot be reached
        """
        ...

    def enqueue_bulk(
        self,
        queue_name: str,
        jobs: Iterable[tuple[str, dict]],
        options: Optional[JobOptions] = None,
    ) -> list[JobRecord]:
        """
        Add several jobs, staggering them by `delay * (index + 1)`.

        Without a delay every job is eligible immediately.
        """
        options = options or JobOptions()
        records = []
        for index, (job_name, payload) in enumerate(jobs):
            job_options = JobOptions(
                priority=options.priority,
                delay=options.delay * (index + 1),
                max_attempts=options.max_attempts,
            )
            records.append(self.enqueue(queue_name, job_name, payload, job_options))
        logger.info(f"Enqueued {len(records)} jobs in bulk on {queue_name}")
        return records

    @abstractmethod
    def dequeue_next(self, queue_name: str) -> Optional[JobRecord]:
        """
        Claim the next eligible job, already transitioned to ACTIVE.

        Returns:
            The claimed job, or None if the queue is paused or has nothing due
        """
        ...

    @abstractmethod
    def mark_active(self, job: JobRecord) -> JobRecord:
        """
        Claim a specific PENDING job: ACTIVE, attempts + 1.

        Raises:
            ConcurrencyViolationError: If the job is not PENDING
        """
        ...

    @abstractmethod
    def mark_completed(self, job: JobRecord, result: Optional[dict] = None) -> JobRecord:
        """
        Record success (terminal).

        Raises:
            ConcurrencyViolationError: If the caller no longer owns the job
        """
        ...

    @abstractmethod
    def mark_failed(
        self,
        job: JobRecord,
        error_message: str,
        retry_at: Optional[datetime] = None,
    ) -> JobRecord:
        """
        Record a failed attempt.

        With retry_at the job returns to PENDING, eligible at retry_at;
        without it the job becomes FAILED (terminal).

        Raises:
            ConcurrencyViolationError: If the caller no longer owns the job
        """
        ...

    @abstractmethod
    def report_progress(self, job: JobRecord, percent: int) -> None:
        """Set progress (clamped to 0-100) on a job the caller owns."""
        ...

    @abstractmethod
    def heartbeat(self, job: JobRecord) -> None:
        """Renew the caller's hold on an ACTIVE job."""
        ...

    @abstractmethod
    def get_job(self, job_id: str) -> JobRecord:
        """
        Raises:
            JobNotFoundError: If no such job exists
        """
        ...

    @abstractmethod
    def list_by_status(
        self,
        queue_name: str,
        status: StatusFilter,
        limit: int = 50,
    ) -> list[JobRecord]:
        """
        List jobs in one status or pending sub-state.

        WAITING jobs come in dequeue order; DELAYED by scheduled_at; terminal
        jobs most recent first.
        """
        ...

    @abstractmethod
    def count_by_status(self, queue_name: str) -> QueueCounts:
        ...

    @abstractmethod
    def clean(
        self,
        queue_name: str,
        older_than_ms: int,
        statuses: Iterable[JobStatus] = (JobStatus.COMPLETED, JobStatus.FAILED),
        limit: int = 100,
    ) -> int:
        """
        Delete terminal jobs processed more than older_than_ms ago.

        At most `limit` jobs are removed per status per call.

        Returns:
            Number of jobs deleted
        """
        ...

    @abstractmethod
    def pause(self, queue_name: str) -> None:
        ...

    @abstractmethod
    def resume(self, queue_name: str) -> None:
        ...

    @abstractmethod
    def is_paused(self, queue_name: str) -> bool:
        ...

    @abstractmethod
    def recover_stalled(self, queue_name: str) -> StallReport:
        """
        Requeue or fail ACTIVE jobs whose worker stopped heartbeating.

        A stalled job is requeued while stalled_count stays within
        max_stalled_count, otherwise failed with STALL_ERROR_MESSAGE.
        """
        ...

    @abstractmethod
    def ping(self) -> bool:
        """Check backend reachability."""
        ...

    def close(self) -> None:
        """Release backend resources."""
        pass
