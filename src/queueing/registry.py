"""
Processor Registry.

Explicit mapping table from JobKind (queue, job name) to the processor that
handles it. Registration rejects pairs outside the job catalogue and double
registrations, so a misconfigured worker fails at startup rather than when
the first job arrives.

A processor is any callable `(payload, context) -> JobResult`. It validates
its own payload, may call the data store or remote services, reports
progress through the context, and raises JobError subclasses on failure.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterator, Optional, Protocol

from .backend import QueueBackend
from .config import QUEUE_SETTINGS, JobKind, QueueSettings, validate_job_kind
from .entities import JobRecord, JobResult
from .errors import ConcurrencyViolationError, ProcessorAlreadyRegisteredError, UnknownJobKindError


logger = logging.getLogger(__name__)


class JobContext:
    """
    Per-execution handle given to processors.

    Exposes the job's identity and a progress reporter; the payload itself is
    passed separately.
    """

    def __init__(self, job: JobRecord, backend: Optional[QueueBackend] = None):
        self._job = job
        self._backend = backend
        self.progress = 0

    @property
    def job_id(self) -> str:
        return self._job.id

    @property
    def queue_name(self) -> str:
        return self._job.queue_name

    @property
    def job_name(self) -> str:
        return self._job.name

    @property
    def attempt(self) -> int:
        return self._job.attempts

    @property
    def max_attempts(self) -> int:
        return self._job.max_attempts

    def report_progress(self, percent: int) -> None:
        """
        Record a progress milestone.

        Progress is informational: losing ownership of the job is logged,
        not raised.
        """
        self.progress = max(0, min(100, int(percent)))
        logger.debug(
            f"Job event: progress | queue={self.queue_name} jobId={self.job_id} "
            f"progress={self.progress}"
        )
        if self._backend is None:
            return
        try:
            self._backend.report_progress(self._job, self.progress)
        except ConcurrencyViolationError as e:
            logger.warning(f"Progress update dropped for job {self.job_id}: {e}")


class Processor(Protocol):
    """Callable that handles one job kind."""

    def __call__(self, payload: dict, context: JobContext) -> JobResult:
        ...


class JobProcessor(ABC):
    """
    Base class for class-based processors.

    Subclasses implement process(); instances are registered directly.
    """

    @abstractmethod
    def process(self, payload: dict, context: JobContext) -> JobResult:
        """
        Handle one job.

        Args:
            payload: Decoded job payload
            context: Progress handle and job identity

        Returns:
            Structured result

        Raises:
            JobError: On failure; the worker pool decides about retries
        """
        ...

    def __call__(self, payload: dict, context: JobContext) -> JobResult:
        return self.process(payload, context)


class ProcessorRegistry:
    """Typed (queue, job name) -> processor table."""

    def __init__(self, queue_settings: Optional[dict[str, QueueSettings]] = None):
        self.queue_settings = queue_settings if queue_settings is not None else QUEUE_SETTINGS
        self._processors: dict[JobKind, Processor] = {}

    def register(self, queue_name: str, job_name: str, processor: Processor) -> None:
        """
        Register the processor for one job kind.

        Raises:
            UnknownJobKindError: If the pair is not in the job catalogue
            ProcessorAlreadyRegisteredError: If the kind already has a processor
        """
        validate_job_kind(queue_name, job_name, self.queue_settings)
        kind = JobKind(queue_name, job_name)
        if kind in self._processors:
            raise ProcessorAlreadyRegisteredError(queue_name, job_name)

        self._processors[kind] = processor
        logger.debug(f"Registered processor for {kind}")

    def resolve(self, queue_name: str, job_name: str) -> Processor:
        """
        Raises:
            UnknownJobKindError: If no processor is registered for the pair
        """
        try:
            return self._processors[JobKind(queue_name, job_name)]
        except KeyError:
            raise UnknownJobKindError(queue_name, job_name) from None

    def is_registered(self, queue_name: str, job_name: str) -> bool:
        return JobKind(queue_name, job_name) in self._processors

    def kinds(self, queue_name: Optional[str] = None) -> list[JobKind]:
        """Registered kinds, optionally limited to one queue."""
        return sorted(
            kind for kind in self._processors
            if queue_name is None or kind.queue_name == queue_name
        )

    def queues(self) -> list[str]:
        """Queues with at least one registered processor."""
        return sorted({kind.queue_name for kind in self._processors})

    def __iter__(self) -> Iterator[JobKind]:
        return iter(self.kinds())

    def __len__(self) -> int:
        return len(self._processors)
