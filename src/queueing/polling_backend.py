"""
Polling queue backend (SQLite).

A single `jobs` table scanned for due pending rows. Workers poll it on a
fixed interval; each scan looks at a bounded batch of candidates and claims
the first one with a conditional UPDATE, so two workers can never activate
the same row.

There is no heartbeat lock as in the broker backend. Instead `updated_at`
is touched by heartbeats and progress reports, and recover_stalled sweeps
ACTIVE rows whose `updated_at` is older than the stale timeout, applying the
same requeue-or-fail policy as the broker's stall monitor.

Persisted layout: id, type (queue name), payload (json), status, attempts,
max_attempts, scheduled_at, processed_at, error_message, created_at,
updated_at, plus priority/ordering/progress bookkeeping columns.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

from .backend import QueueBackend, StatusFilter, STALL_ERROR_MESSAGE
from .config import (
    DEFAULT_POLL_INTERVAL_SECONDS,
    MAX_STALLED_COUNT,
    POLLING_BATCH_SIZE,
    STALE_ACTIVE_TIMEOUT_SECONDS,
    QueueSettings,
    get_queue_settings,
)
from .entities import (
    JobOptions,
    JobRecord,
    JobState,
    JobStatus,
    QueueCounts,
    StallReport,
    from_iso,
    to_iso,
    utc_now,
)
from .errors import (
    BackendUnavailableError,
    ConcurrencyViolationError,
    JobNotFoundError,
)


logger = logging.getLogger(__name__)


class PollingQueueBackend(QueueBackend):
    """
    SQLite-backed queue.

    Opens a short-lived connection per operation (WAL mode) so it can be
    shared by every worker thread without locking of its own.
    """

    name = "polling"
    default_poll_interval = DEFAULT_POLL_INTERVAL_SECONDS

    def __init__(
        self,
        db_path: str | Path,
        queue_settings: Optional[dict[str, QueueSettings]] = None,
        clock: Callable[[], datetime] = utc_now,
        max_stalled_count: int = MAX_STALLED_COUNT,
        batch_size: int = POLLING_BATCH_SIZE,
        stale_timeout_seconds: float = STALE_ACTIVE_TIMEOUT_SECONDS,
    ):
        """
        Initialize the polling backend.

        Args:
            db_path: Path to SQLite database file
            queue_settings: Queue catalogue
            clock: Returns the current aware UTC datetime
            max_stalled_count: Times a stale job may be requeued before failing
            batch_size: Candidate rows examined per dequeue scan
            stale_timeout_seconds: Age of updated_at after which an ACTIVE row is stale
        """
        super().__init__(queue_settings, clock, max_stalled_count)
        self.db_path = str(db_path)
        self.batch_size = batch_size
        self.stale_timeout_seconds = stale_timeout_seconds
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with WAL mode enabled."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database connections."""
        conn = self._get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS jobs (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    type TEXT NOT NULL,
                    name TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    priority INTEGER NOT NULL DEFAULT 0,
                    progress INTEGER NOT NULL DEFAULT 0,
                    stalled_count INTEGER NOT NULL DEFAULT 0,
                    result TEXT,
                    error_message TEXT,
                    scheduled_at TEXT NOT NULL,
                    started_at TEXT,
                    processed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            # Dequeue order among due jobs
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_dequeue
                ON jobs (type, status, priority DESC, seq ASC)
            """)

            # Due-time scans and cleanup
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_scheduled
                ON jobs (type, status, scheduled_at)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_processed
                ON jobs (type, status, processed_at)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS queue_state (
                    queue_name TEXT PRIMARY KEY,
                    paused INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
            """)

    def _row_to_job(self, row: sqlite3.Row) -> JobRecord:
        """Convert database row to JobRecord entity."""
        return JobRecord(
            id=row["id"],
            queue_name=row["type"],
            name=row["name"],
            payload=json.loads(row["payload"]),
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            max_attempts=row["max_attempts"],
            priority=row["priority"],
            sequence=row["seq"],
            progress=row["progress"],
            stalled_count=row["stalled_count"],
            result=json.loads(row["result"]) if row["result"] else None,
            error_message=row["error_message"],
            scheduled_at=from_iso(row["scheduled_at"]),
            started_at=from_iso(row["started_at"]),
            processed_at=from_iso(row["processed_at"]),
            created_at=from_iso(row["created_at"]),
            updated_at=from_iso(row["updated_at"]),
        )

    def _fetch(self, conn: sqlite3.Connection, job_id: str) -> JobRecord:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFoundError(job_id)
        return self._row_to_job(row)

    # =========================================================================
    # Enqueue / Dequeue
    # =========================================================================

    def enqueue(
        self,
        queue_name: str,
        job_name: str,
        payload: dict,
        options: Optional[JobOptions] = None,
    ) -> JobRecord:
        job = self._new_job(queue_name, job_name, payload, options)

        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO jobs (
                        id, type, name, payload, status, attempts, max_attempts,
                        priority, scheduled_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.queue_name,
                        job.name,
                        json.dumps(job.payload),
                        job.status.value,
                        job.attempts,
                        job.max_attempts,
                        job.priority,
                        to_iso(job.scheduled_at),
                        to_iso(job.created_at),
                        to_iso(job.updated_at),
                    ),
                )
                job.sequence = cursor.lastrowid
        except sqlite3.OperationalError as e:
            raise BackendUnavailableError(self.name, str(e)) from e

        logger.info(
            f"Enqueued job {job.id} ({queue_name}/{job_name}, "
            f"priority={job.priority}, scheduled_at={to_iso(job.scheduled_at)})"
        )
        return job

    def dequeue_next(self, queue_name: str) -> Optional[JobRecord]:
        if self.is_paused(queue_name):
            return None

        now = to_iso(self._now())
        with self._transaction() as conn:
            candidates = conn.execute(
                """
                SELECT id FROM jobs
                WHERE type = ? AND status = 'pending' AND scheduled_at <= ?
                ORDER BY priority DESC, seq ASC
                LIMIT ?
                """,
                (queue_name, now, self.batch_size),
            ).fetchall()

            for candidate in candidates:
                if self._claim(conn, candidate["id"], now):
                    return self._fetch(conn, candidate["id"])
                logger.debug(f"Job {candidate['id']} claimed by another worker")

        return None

    def _claim(self, conn: sqlite3.Connection, job_id: str, now: str) -> bool:
        """Atomic PENDING -> ACTIVE; False if another worker got there first."""
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'active', attempts = attempts + 1, progress = 0,
                started_at = ?, updated_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            (now, now, job_id),
        )
        return cursor.rowcount == 1

    # =========================================================================
    # Job Transitions
    # =========================================================================

    def mark_active(self, job: JobRecord) -> JobRecord:
        now = to_iso(self._now())
        with self._transaction() as conn:
            if not self._claim(conn, job.id, now):
                current = self._fetch(conn, job.id)
                raise ConcurrencyViolationError(
                    job.id, JobStatus.PENDING.value, current.status.value
                )
            return self._fetch(conn, job.id)

    def _owned_update(self, job: JobRecord, assignments: str, params: tuple) -> JobRecord:
        """Apply an UPDATE only while the job is ACTIVE under the caller's attempt."""
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE jobs SET {assignments} "
                f"WHERE id = ? AND status = 'active' AND attempts = ?",
                (*params, job.id, job.attempts),
            )
            if cursor.rowcount == 0:
                current = self._fetch(conn, job.id)
                raise ConcurrencyViolationError(
                    job.id, JobStatus.ACTIVE.value, current.status.value
                )
            return self._fetch(conn, job.id)

    def mark_completed(self, job: JobRecord, result: Optional[dict] = None) -> JobRecord:
        now = to_iso(self._now())
        return self._owned_update(
            job,
            "status = 'completed', progress = 100, result = ?, "
            "processed_at = ?, updated_at = ?",
            (json.dumps(result) if result is not None else None, now, now),
        )

    def mark_failed(
        self,
        job: JobRecord,
        error_message: str,
        retry_at: Optional[datetime] = None,
    ) -> JobRecord:
        now = to_iso(self._now())
        if retry_at is not None:
            return self._owned_update(
                job,
                "status = 'pending', scheduled_at = ?, error_message = ?, updated_at = ?",
                (to_iso(retry_at), error_message, now),
            )
        return self._owned_update(
            job,
            "status = 'failed', error_message = ?, processed_at = ?, updated_at = ?",
            (error_message, now, now),
        )

    def report_progress(self, job: JobRecord, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        self._owned_update(
            job,
            "progress = ?, updated_at = ?",
            (percent, to_iso(self._now())),
        )

    def heartbeat(self, job: JobRecord) -> None:
        self._owned_update(job, "updated_at = ?", (to_iso(self._now()),))

    # =========================================================================
    # Queries
    # =========================================================================

    def get_job(self, job_id: str) -> JobRecord:
        with self._connection() as conn:
            return self._fetch(conn, job_id)

    def list_by_status(
        self,
        queue_name: str,
        status: StatusFilter,
        limit: int = 50,
    ) -> list[JobRecord]:
        if status == JobStatus.PENDING:
            waiting = self.list_by_status(queue_name, JobState.WAITING, limit)
            delayed = self.list_by_status(queue_name, JobState.DELAYED, limit)
            return (waiting + delayed)[:limit]

        now = to_iso(self._now())
        queries = {
            JobState.WAITING: (
                "status = 'pending' AND scheduled_at <= ?",
                (now,),
                "priority DESC, seq ASC",
            ),
            JobState.DELAYED: (
                "status = 'pending' AND scheduled_at > ?",
                (now,),
                "scheduled_at ASC, seq ASC",
            ),
            JobStatus.ACTIVE: ("status = 'active'", (), "started_at ASC, seq ASC"),
            JobStatus.COMPLETED: ("status = 'completed'", (), "processed_at DESC, seq DESC"),
            JobStatus.FAILED: ("status = 'failed'", (), "processed_at DESC, seq DESC"),
        }
        where, params, order_by = queries[status]

        with self._connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE type = ? AND {where} "
                f"ORDER BY {order_by} LIMIT ?",
                (queue_name, *params, limit),
            ).fetchall()
            return [self._row_to_job(row) for row in rows]

    def count_by_status(self, queue_name: str) -> QueueCounts:
        now = to_iso(self._now())
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT
                    SUM(CASE WHEN status = 'pending' AND scheduled_at <= ? THEN 1 ELSE 0 END)
                        AS waiting,
                    SUM(CASE WHEN status = 'pending' AND scheduled_at > ? THEN 1 ELSE 0 END)
                        AS delayed,
                    SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END) AS active,
                    SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS completed,
                    SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed
                FROM jobs WHERE type = ?
                """,
                (now, now, queue_name),
            ).fetchone()

        return QueueCounts(
            waiting=row["waiting"] or 0,
            active=row["active"] or 0,
            completed=row["completed"] or 0,
            failed=row["failed"] or 0,
            delayed=row["delayed"] or 0,
        )

    # =========================================================================
    # Maintenance
    # =========================================================================

    def clean(
        self,
        queue_name: str,
        older_than_ms: int,
        statuses: Iterable[JobStatus] = (JobStatus.COMPLETED, JobStatus.FAILED),
        limit: int = 100,
    ) -> int:
        cutoff = to_iso(self._now() - timedelta(milliseconds=older_than_ms))
        deleted = 0

        with self._transaction() as conn:
            for status in statuses:
                if not JobStatus(status).is_terminal:
                    raise ValueError(f"Only terminal jobs can be cleaned, got {status}")
                cursor = conn.execute(
                    """
                    DELETE FROM jobs WHERE id IN (
                        SELECT id FROM jobs
                        WHERE type = ? AND status = ? AND processed_at < ?
                        ORDER BY processed_at ASC
                        LIMIT ?
                    )
                    """,
                    (queue_name, JobStatus(status).value, cutoff, limit),
                )
                deleted += cursor.rowcount

        if deleted:
            logger.info(f"Cleaned {deleted} jobs from {queue_name}")
        return deleted

    def pause(self, queue_name: str) -> None:
        self._set_paused(queue_name, True)
        logger.info(f"Queue paused: {queue_name}")

    def resume(self, queue_name: str) -> None:
        self._set_paused(queue_name, False)
        logger.info(f"Queue resumed: {queue_name}")

    def _set_paused(self, queue_name: str, paused: bool) -> None:
        get_queue_settings(queue_name, self.queue_settings)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO queue_state (queue_name, paused, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(queue_name) DO UPDATE
                SET paused = excluded.paused, updated_at = excluded.updated_at
                """,
                (queue_name, int(paused), to_iso(self._now())),
            )

    def is_paused(self, queue_name: str) -> bool:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT paused FROM queue_state WHERE queue_name = ?",
                (queue_name,),
            ).fetchone()
            return bool(row and row["paused"])

    def recover_stalled(self, queue_name: str) -> StallReport:
        now = self._now()
        cutoff = to_iso(now - timedelta(seconds=self.stale_timeout_seconds))
        report = StallReport(queue_name=queue_name)

        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM jobs
                WHERE type = ? AND status = 'active' AND updated_at < ?
                ORDER BY seq ASC
                """,
                (queue_name, cutoff),
            ).fetchall()

            for row in rows:
                job = self._row_to_job(row)
                outcome = self._stall_outcome(job)

                if outcome == JobStatus.FAILED:
                    cursor = conn.execute(
                        """
                        UPDATE jobs
                        SET status = 'failed', stalled_count = stalled_count + 1,
                            error_message = ?, processed_at = ?, updated_at = ?
                        WHERE id = ? AND status = 'active' AND updated_at = ?
                        """,
                        (STALL_ERROR_MESSAGE, to_iso(now), to_iso(now),
                         job.id, row["updated_at"]),
                    )
                    target = report.failed
                else:
                    cursor = conn.execute(
                        """
                        UPDATE jobs
                        SET status = 'pending', stalled_count = stalled_count + 1,
                            scheduled_at = ?, updated_at = ?
                        WHERE id = ? AND status = 'active' AND updated_at = ?
                        """,
                        (to_iso(now), to_iso(now), job.id, row["updated_at"]),
                    )
                    target = report.requeued

                if cursor.rowcount == 1:
                    target.append(job.id)
                    logger.warning(
                        f"Job event: stalled | queue={queue_name} jobId={job.id} "
                        f"jobName={job.name} stalledCount={job.stalled_count + 1} "
                        f"outcome={outcome.value}"
                    )

        return report

    def ping(self) -> bool:
        try:
            with self._connection() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.error(f"Polling backend ping failed: {e}")
            return False
