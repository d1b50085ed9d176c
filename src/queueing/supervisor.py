"""
Queue Supervisor.

Operational view over every queue on one backend:
- health check and statistics aggregation
- pause / resume
- cleanup of old terminal jobs (bounded per call)
- the stall monitor: a background thread running recover_stalled() for
  every queue each stall interval

Each per-queue step is isolated: a failure on one queue is logged and
reported in the returned stats, and the remaining queues are still handled.
"""

import logging
import threading
from typing import Iterable, Optional

from .backend import QueueBackend
from .config import (
    DEFAULT_CLEANUP_AGE_MS,
    STALLED_INTERVAL_SECONDS,
    QueueSettings,
    get_queue_settings,
)
from .entities import JobStatus


logger = logging.getLogger(__name__)


class QueueSupervisor:
    """Health, statistics and maintenance for a set of queues."""

    def __init__(
        self,
        backend: QueueBackend,
        queue_settings: dict[str, QueueSettings],
        stall_check_interval: float = STALLED_INTERVAL_SECONDS,
    ):
        """
        Args:
            backend: Shared queue backend
            queue_settings: Queues to supervise
            stall_check_interval: Seconds between stall recovery passes
        """
        self.backend = backend
        self.queue_settings = queue_settings
        self.stall_check_interval = stall_check_interval

        self._monitor_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def queue_names(self) -> list[str]:
        return list(self.queue_settings)

    def _resolve(self, queue_names: Optional[Iterable[str]]) -> list[str]:
        if queue_names is None:
            return self.queue_names
        names = list(queue_names)
        for name in names:
            get_queue_settings(name, self.queue_settings)
        return names

    # =========================================================================
    # Health & Statistics
    # =========================================================================

    def get_statistics(self) -> dict[str, dict]:
        """
        Per-queue counts: {queue: {waiting, active, completed, failed, delayed, total}}.

        A queue whose counts cannot be read reports {"error": ...} instead.
        """
        stats = {}
        for queue_name in self.queue_names:
            try:
                stats[queue_name] = self.backend.count_by_status(queue_name).to_dict()
            except Exception as e:
                logger.error(f"Error reading statistics for {queue_name}: {e}")
                stats[queue_name] = {"error": str(e)}
        return stats

    def check_health(self) -> dict:
        """
        Backend reachability plus per-queue paused flag and counts.

        Returns:
            {"healthy": bool, "backend": name, "queues": {...}, "errors": [...]}
        """
        health = {
            "healthy": False,
            "backend": self.backend.name,
            "queues": {},
            "errors": [],
        }

        if not self.backend.ping():
            health["errors"].append(f"Backend {self.backend.name} unreachable")
            return health

        for queue_name in self.queue_names:
            try:
                health["queues"][queue_name] = {
                    "paused": self.backend.is_paused(queue_name),
                    "counts": self.backend.count_by_status(queue_name).to_dict(),
                }
            except Exception as e:
                logger.error(f"Health check failed for {queue_name}: {e}")
                health["errors"].append(f"{queue_name}: {e}")

        health["healthy"] = not health["errors"]
        return health

    # =========================================================================
    # Operational Control
    # =========================================================================

    def pause(self, queue_names: Optional[Iterable[str]] = None) -> list[str]:
        """Pause the given queues (default: all). Returns the paused names."""
        names = self._resolve(queue_names)
        for queue_name in names:
            self.backend.pause(queue_name)
        return names

    def resume(self, queue_names: Optional[Iterable[str]] = None) -> list[str]:
        """Resume the given queues (default: all). Returns the resumed names."""
        names = self._resolve(queue_names)
        for queue_name in names:
            self.backend.resume(queue_name)
        return names

    def cleanup(self, older_than_ms: int = DEFAULT_CLEANUP_AGE_MS) -> dict:
        """
        Delete terminal jobs older than the retention window on every queue.

        Each queue's clean limits bound how many completed and failed jobs a
        single call may delete.

        Returns:
            {"queues": {queue: {"completed": n, "failed": n}}, "total": n, "errors": [...]}
        """
        stats = {"queues": {}, "total": 0, "errors": []}

        for queue_name, settings in self.queue_settings.items():
            try:
                completed = self.backend.clean(
                    queue_name,
                    older_than_ms,
                    statuses=(JobStatus.COMPLETED,),
                    limit=settings.clean_completed_limit,
                )
                failed = self.backend.clean(
                    queue_name,
                    older_than_ms,
                    statuses=(JobStatus.FAILED,),
                    limit=settings.clean_failed_limit,
                )
                stats["queues"][queue_name] = {"completed": completed, "failed": failed}
                stats["total"] += completed + failed
            except Exception as e:
                logger.error(f"Error cleaning {queue_name}: {e}")
                stats["errors"].append(f"{queue_name}: {e}")

        logger.info(f"Cleanup complete: {stats['total']} jobs removed")
        return stats

    # =========================================================================
    # Stall Monitor
    # =========================================================================

    def recover_stalled(self) -> dict:
        """
        One stall recovery pass over every queue.

        Returns:
            {"requeued": n, "failed": n, "errors": [...]}
        """
        stats = {"requeued": 0, "failed": 0, "errors": []}

        for queue_name in self.queue_names:
            try:
                report = self.backend.recover_stalled(queue_name)
                stats["requeued"] += len(report.requeued)
                stats["failed"] += len(report.failed)
            except Exception as e:
                logger.error(f"Error recovering stalled jobs on {queue_name}: {e}")
                stats["errors"].append(f"{queue_name}: {e}")

        if stats["requeued"] or stats["failed"]:
            logger.warning(
                f"Stall recovery: {stats['requeued']} requeued, "
                f"{stats['failed']} failed"
            )
        return stats

    def start_monitor(self) -> None:
        """Run recover_stalled() in the background every stall interval."""
        if self._monitor_thread is not None:
            return

        self._stop_event.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop,
            name="stall-monitor",
            daemon=True,
        )
        self._monitor_thread.start()
        logger.info(f"Stall monitor started (interval={self.stall_check_interval}s)")

    def stop_monitor(self, timeout: float = 5.0) -> None:
        if self._monitor_thread is None:
            return

        self._stop_event.set()
        self._monitor_thread.join(timeout=timeout)
        if self._monitor_thread.is_alive():
            logger.warning("Stall monitor did not stop within timeout")
        self._monitor_thread = None
        logger.info("Stall monitor stopped")

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(self.stall_check_interval):
            try:
                self.recover_stalled()
            except Exception as e:
                logger.error(f"Error in stall monitor: {e}", exc_info=True)
