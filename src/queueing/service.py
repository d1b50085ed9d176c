"""
Queue Service - application lifecycle for the job queue.

Owns every component for one process:
- QueueBackend (shared connection)
- ProcessorRegistry
- one WorkerPool per queue
- QueueSupervisor (statistics, maintenance, stall monitor)

Constructed once at startup and torn down through shutdown(), which is also
what the SIGTERM/SIGINT handlers call.

Usage:
    service = QueueService.create(backend)
    register_processors(service.registry, ...)
    service.start()
    service.install_signal_handlers()
    service.wait()
"""

import logging
import os
import signal
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from .backend import QueueBackend, StatusFilter
from .broker_backend import RedisQueueBackend, create_redis_client
from .config import (
    DEFAULT_CLEANUP_AGE_MS,
    STALLED_INTERVAL_SECONDS,
    QueueSettings,
    get_queue_settings,
    load_queue_settings,
)
from .entities import JobOptions, JobRecord, utc_now
from .polling_backend import PollingQueueBackend
from .registry import ProcessorRegistry
from .retry_policy import RetryPolicy
from .supervisor import QueueSupervisor
from .worker_pool import WorkerPool


logger = logging.getLogger(__name__)


DEFAULT_QUEUE_DB_PATH = "data/queue.db"


def create_backend(
    kind: Optional[str] = None,
    queue_settings: Optional[dict[str, QueueSettings]] = None,
    clock: Callable[[], datetime] = utc_now,
) -> QueueBackend:
    """
    Build the configured backend.

    Args:
        kind: "polling" or "redis"; defaults to QUEUE_BACKEND (polling)
        queue_settings: Queue catalogue
        clock: Returns the current aware UTC datetime

    Raises:
        ValueError: For an unknown backend kind
    """
    kind = (kind or os.getenv("QUEUE_BACKEND", "polling")).lower()

    if kind == "polling":
        db_path = Path(os.getenv("QUEUE_DB_PATH", DEFAULT_QUEUE_DB_PATH))
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return PollingQueueBackend(db_path, queue_settings=queue_settings, clock=clock)

    if kind == "redis":
        return RedisQueueBackend(
            create_redis_client(),
            queue_settings=queue_settings,
            clock=clock,
        )

    raise ValueError(f"Unknown queue backend: {kind}")


class QueueService:
    """
    Coordinates the backend, pools and supervisor.

    Enqueueing and statistics work without start(); start() only launches
    the worker pools and the stall monitor.
    """

    def __init__(
        self,
        backend: QueueBackend,
        registry: ProcessorRegistry,
        queue_settings: dict[str, QueueSettings],
        pools: dict[str, WorkerPool],
        supervisor: QueueSupervisor,
    ):
        """
        Initialize QueueService with all components.

        Use QueueService.create() for convenient construction.
        """
        self.backend = backend
        self.registry = registry
        self.queue_settings = queue_settings
        self.pools = pools
        self.supervisor = supervisor

        self._started = False
        self._closed = False
        self._shutdown_lock = threading.Lock()
        self._stopped_event = threading.Event()

    @classmethod
    def create(
        cls,
        backend: QueueBackend,
        registry: Optional[ProcessorRegistry] = None,
        queue_settings: Optional[dict[str, QueueSettings]] = None,
        poll_interval: Optional[float] = None,
        stall_check_interval: float = STALLED_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> "QueueService":
        """
        Create a QueueService with all components wired together.

        Args:
            backend: Queue backend shared by every pool
            registry: Processor registry (default: empty, register later)
            queue_settings: Queue catalogue (default: APP_ENV profile)
            poll_interval: Idle wait between dequeues (default: backend's)
            stall_check_interval: Seconds between stall recovery passes
            clock: Returns the current aware UTC datetime

        Returns:
            Configured QueueService
        """
        queue_settings = queue_settings or load_queue_settings()
        registry = registry or ProcessorRegistry(queue_settings)

        pools = {
            name: WorkerPool(
                queue_name=name,
                backend=backend,
                registry=registry,
                retry_policy=RetryPolicy(settings.backoff_base_ms),
                concurrency=settings.concurrency,
                poll_interval=poll_interval,
                heartbeat_interval=stall_check_interval / 2,
                clock=clock,
            )
            for name, settings in queue_settings.items()
        }

        supervisor = QueueSupervisor(
            backend=backend,
            queue_settings=queue_settings,
            stall_check_interval=stall_check_interval,
        )

        return cls(
            backend=backend,
            registry=registry,
            queue_settings=queue_settings,
            pools=pools,
            supervisor=supervisor,
        )

    @classmethod
    def from_env(cls, registry: Optional[ProcessorRegistry] = None) -> "QueueService":
        """Create a service for the backend named by QUEUE_BACKEND."""
        queue_settings = load_queue_settings()
        poll_interval = os.getenv("QUEUE_POLL_INTERVAL")
        return cls.create(
            backend=create_backend(queue_settings=queue_settings),
            registry=registry,
            queue_settings=queue_settings,
            poll_interval=float(poll_interval) if poll_interval else None,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(
        self,
        queues: Optional[Iterable[str]] = None,
        run_recovery: bool = True,
    ) -> dict:
        """
        Start worker pools and the stall monitor.

        Args:
            queues: Queues to work (default: every queue with a processor)
            run_recovery: Whether to recover stalled jobs first

        Returns:
            Recovery statistics if recovery was run
        """
        if self._started:
            raise RuntimeError("Queue service already started")
        if self._closed:
            raise RuntimeError("Queue service has been shut down")

        queue_names = list(queues) if queues is not None else self.registry.queues()
        for name in queue_names:
            get_queue_settings(name, self.queue_settings)
            if not self.registry.kinds(name):
                raise RuntimeError(f"No processors registered for queue {name}")

        logger.info("Starting queue service...")

        recovery_stats = {}
        if run_recovery:
            recovery_stats = self.supervisor.recover_stalled()

        for name in queue_names:
            self.pools[name].start()
        self.supervisor.start_monitor()
        self._started = True

        logger.info(f"Queue service started: {', '.join(queue_names) or 'no queues'}")
        return recovery_stats

    def shutdown(self, timeout: float = 30.0) -> None:
        """
        Close every pool, stop the monitor and release the backend.

        Idempotent; safe to call from a signal handler.

        Args:
            timeout: Maximum seconds to wait for in-flight jobs per pool
        """
        with self._shutdown_lock:
            if self._closed:
                return
            self._closed = True

        logger.info("Shutting down queue service...")
        for pool in self.pools.values():
            pool.close(timeout=timeout)
        self.supervisor.stop_monitor()
        self.backend.close()

        self._started = False
        self._stopped_event.set()
        logger.info("Queue service stopped")

    @property
    def is_running(self) -> bool:
        """Check if any pool is working."""
        return self._started and any(pool.is_running() for pool in self.pools.values())

    def install_signal_handlers(self, timeout: float = 30.0) -> None:
        """Route SIGTERM and SIGINT to shutdown(). Main thread only."""

        def handle_signal(signum, frame):
            signal_name = signal.Signals(signum).name
            logger.info(f"{signal_name} received - finishing in-flight jobs")
            self.shutdown(timeout=timeout)

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until shutdown() has completed."""
        return self._stopped_event.wait(timeout)

    # =========================================================================
    # Job Operations
    # =========================================================================

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict,
        priority: Optional[int] = None,
        delay: int = 0,
        max_attempts: Optional[int] = None,
    ) -> JobRecord:
        """
        Schedule a job; returns as soon as it is stored.

        Args:
            delay: Milliseconds before the job becomes eligible
        """
        options = JobOptions(priority=priority, delay=delay, max_attempts=max_attempts)
        return self.backend.enqueue(queue_name, job_name, payload, options)

    def enqueue_bulk(
        self,
        queue_name: str,
        jobs: Iterable[tuple[str, dict]],
        delay: int = 0,
    ) -> list[JobRecord]:
        return self.backend.enqueue_bulk(queue_name, jobs, JobOptions(delay=delay))

    def get_job(self, job_id: str) -> JobRecord:
        return self.backend.get_job(job_id)

    def list_jobs(self, queue_name: str, status: StatusFilter, limit: int = 50) -> list[JobRecord]:
        get_queue_settings(queue_name, self.queue_settings)
        return self.backend.list_by_status(queue_name, status, limit)

    # =========================================================================
    # Operational Control
    # =========================================================================

    def get_statistics(self) -> dict[str, dict]:
        return self.supervisor.get_statistics()

    def check_health(self) -> dict:
        health = self.supervisor.check_health()
        health["workers_running"] = self.is_running
        return health

    def pause(self, queue_name: str) -> None:
        self.supervisor.pause([queue_name])

    def resume(self, queue_name: str) -> None:
        self.supervisor.resume([queue_name])

    def pause_all(self) -> list[str]:
        return self.supervisor.pause()

    def resume_all(self) -> list[str]:
        return self.supervisor.resume()

    def cleanup(self, older_than_ms: int = DEFAULT_CLEANUP_AGE_MS) -> dict:
        return self.supervisor.cleanup(older_than_ms)
