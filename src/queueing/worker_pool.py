"""
Worker Pool.

One pool per queue:
- `concurrency` worker threads, each claiming one job at a time, so at most
  `concurrency` jobs of the queue are active in this process
- a heartbeat thread that renews the hold on every in-flight job at half the
  stall interval
- the single decision point for retry-vs-fail, via RetryPolicy

What the pool MUST NOT do:
- Modify job payloads
- Cancel a job mid-flight (a job runs to completion or raises)
- Detect stalls (the supervisor's stall monitor does that)
"""

import logging
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from .backend import QueueBackend
from .config import STALLED_INTERVAL_SECONDS
from .entities import JobRecord, JobResult, to_iso, utc_now
from .errors import ConcurrencyViolationError, ErrorKind, JobError, UnknownJobKindError, ValidationError
from .registry import JobContext, ProcessorRegistry
from .retry_policy import RetryPolicy


logger = logging.getLogger(__name__)


class PoolState(str, Enum):
    """Worker pool lifecycle states."""

    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    CLOSING = "CLOSING"


class WorkerPool:
    """
    Pulls jobs for one queue and runs them through the registry.

    dispatch_one() is the unit of work and can be driven directly (tests,
    one-shot runs); start() runs it in `concurrency` background threads.
    """

    def __init__(
        self,
        queue_name: str,
        backend: QueueBackend,
        registry: ProcessorRegistry,
        retry_policy: Optional[RetryPolicy] = None,
        concurrency: int = 1,
        poll_interval: Optional[float] = None,
        heartbeat_interval: float = STALLED_INTERVAL_SECONDS / 2,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize WorkerPool.

        Args:
            queue_name: Queue this pool serves
            backend: Shared queue backend
            registry: Processor registry
            retry_policy: Backoff policy (default: 2000ms exponential)
            concurrency: Maximum simultaneously active jobs
            poll_interval: Seconds to wait when the queue is empty
                (default: backend's default)
            heartbeat_interval: Seconds between lock renewals
            clock: Returns the current aware UTC datetime
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        self.queue_name = queue_name
        self.backend = backend
        self.registry = registry
        self.retry_policy = retry_policy or RetryPolicy()
        self.concurrency = concurrency
        self.poll_interval = (
            poll_interval if poll_interval is not None else backend.default_poll_interval
        )
        self.heartbeat_interval = heartbeat_interval
        self.clock = clock

        self._state = PoolState.STOPPED
        self._threads: list[threading.Thread] = []
        self._heartbeat_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._in_flight: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    @property
    def state(self) -> PoolState:
        """Get current pool state."""
        return self._state

    def is_running(self) -> bool:
        return self._state == PoolState.RUNNING

    def in_flight(self) -> list[JobRecord]:
        """Jobs currently executing in this pool."""
        with self._lock:
            return list(self._in_flight.values())

    # =========================================================================
    # Single Dispatch Operation
    # =========================================================================

    def dispatch_one(self) -> Optional[JobRecord]:
        """
        Claim and run one job.

        Returns:
            The job in its post-run state, or None if nothing was due
        """
        job = self.backend.dequeue_next(self.queue_name)
        if job is None:
            return None
        return self.process_job(job)

    def process_job(self, job: JobRecord) -> Optional[JobRecord]:
        """
        Run an ACTIVE job and commit its outcome.

        Every exception raised by the processor is caught here; nothing a
        processor does can take down the worker loop.

        Returns:
            The job after its transition, or None if ownership was lost
        """
        logger.info(
            f"Job event: active | queue={job.queue_name} jobId={job.id} "
            f"jobName={job.name} attempt={job.attempts}/{job.max_attempts}"
        )
        started = time.monotonic()
        context = JobContext(job, self.backend)

        with self._lock:
            self._in_flight[job.id] = job

        try:
            try:
                processor = self.registry.resolve(job.queue_name, job.name)
            except UnknownJobKindError as e:
                return self._handle_failure(
                    job,
                    ValidationError(str(e), code="UNKNOWN_JOB_KIND"),
                    started,
                )

            try:
                result = processor(job.payload, context)
            except Exception as exc:
                return self._handle_failure(job, self.retry_policy.classify(exc), started)

            return self._handle_success(job, result, started)

        finally:
            with self._lock:
                self._in_flight.pop(job.id, None)

    def _handle_success(
        self,
        job: JobRecord,
        result: JobResult | dict | None,
        started: float,
    ) -> Optional[JobRecord]:
        duration_ms = int((time.monotonic() - started) * 1000)
        if isinstance(result, JobResult):
            result = result.to_dict()

        try:
            completed = self.backend.mark_completed(job, result)
        except ConcurrencyViolationError as e:
            logger.warning(f"Job {job.id} finished after losing ownership: {e}")
            return None

        logger.info(
            f"Job event: completed | queue={job.queue_name} jobId={job.id} "
            f"jobName={job.name} duration={duration_ms}ms success=True"
        )
        return completed

    def _handle_failure(
        self,
        job: JobRecord,
        error: JobError,
        started: float,
    ) -> Optional[JobRecord]:
        duration_ms = int((time.monotonic() - started) * 1000)

        # Already satisfied: record as done rather than failed
        if error.kind == ErrorKind.DUPLICATE:
            result = JobResult(
                message=error.message,
                data={"duplicate": True, "code": error.code, **error.context},
            )
            return self._handle_success(job, result, started)

        decision = self.retry_policy.evaluate(job, error)
        retry_at = decision.retry_at(self.clock())

        try:
            updated = self.backend.mark_failed(job, error.message, retry_at=retry_at)
        except ConcurrencyViolationError as e:
            logger.warning(f"Job {job.id} failed after losing ownership: {e}")
            return None

        if decision.retry:
            logger.warning(
                f"Job event: retrying | queue={job.queue_name} jobId={job.id} "
                f"jobName={job.name} error={error.code}: {error.message} "
                f"attemptsMade={job.attempts} delay={decision.delay_ms}ms retryAt={to_iso(retry_at)} "
                f"duration={duration_ms}ms"
            )
        else:
            logger.error(
                f"Job event: failed | queue={job.queue_name} jobId={job.id} "
                f"jobName={job.name} error={error.code}: {error.message} "
                f"attemptsMade={job.attempts} reason={decision.reason} "
                f"duration={duration_ms}ms success=False"
            )
        return updated

    # =========================================================================
    # Worker Loop
    # =========================================================================

    def start(self) -> None:
        """Start `concurrency` worker threads and the heartbeat thread."""
        if self._state != PoolState.STOPPED:
            raise RuntimeError(f"Cannot start pool in {self._state.value} state")

        self._stop_event.clear()
        self._state = PoolState.RUNNING

        self._threads = [
            threading.Thread(
                target=self._worker_loop,
                args=(slot,),
                name=f"worker-{self.queue_name}-{slot}",
                daemon=True,
            )
            for slot in range(self.concurrency)
        ]
        for thread in self._threads:
            thread.start()

        self._heartbeat_thread = threading.Thread(
            target=self._heartbeat_loop,
            name=f"heartbeat-{self.queue_name}",
            daemon=True,
        )
        self._heartbeat_thread.start()

        logger.info(
            f"Worker pool started: {self.queue_name} "
            f"(concurrency={self.concurrency}, backend={self.backend.name})"
        )

    def close(self, timeout: float = 30.0) -> bool:
        """
        Stop taking new jobs and wait for in-flight jobs to finish.

        The backend is shared between pools and is closed by its owner.

        Args:
            timeout: Maximum seconds to wait for all worker threads

        Returns:
            True if every worker finished within the timeout
        """
        if self._state == PoolState.STOPPED:
            return True

        logger.info(f"Closing worker pool {self.queue_name}...")
        self._state = PoolState.CLOSING
        self._stop_event.set()

        deadline = time.monotonic() + timeout
        clean = True
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                clean = False
                logger.warning(f"Worker {thread.name} did not stop within timeout")

        if self._heartbeat_thread is not None:
            self._heartbeat_thread.join(timeout=max(0.0, deadline - time.monotonic()))
            self._heartbeat_thread = None

        self._threads = []
        self._state = PoolState.STOPPED
        logger.info(f"Worker pool {self.queue_name} closed")
        return clean

    def _worker_loop(self, slot: int) -> None:
        """Main loop of one worker slot."""
        logger.debug(f"Worker {self.queue_name}#{slot} started")

        while not self._stop_event.is_set():
            try:
                job = self.dispatch_one()
                if job is None:
                    self._stop_event.wait(self.poll_interval)
            except Exception as e:
                logger.error(
                    f"Error in worker loop {self.queue_name}#{slot}: {e}",
                    exc_info=True,
                )
                self._stop_event.wait(self.poll_interval)

        logger.debug(f"Worker {self.queue_name}#{slot} stopped")

    def _heartbeat_loop(self) -> None:
        """Renew locks on in-flight jobs until the pool stops."""
        while not self._stop_event.wait(self.heartbeat_interval):
            self.send_heartbeats()

    def send_heartbeats(self) -> int:
        """
        Renew the hold on every in-flight job.

        Returns:
            Number of jobs renewed
        """
        renewed = 0
        for job in self.in_flight():
            try:
                self.backend.heartbeat(job)
                renewed += 1
            except ConcurrencyViolationError as e:
                logger.warning(f"Heartbeat rejected for job {job.id}: {e}")
            except Exception as e:
                logger.error(f"Heartbeat failed for job {job.id}: {e}")
        return renewed
