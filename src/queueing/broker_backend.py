"""
Broker queue backend (Redis).

Key layout per queue (prefix defaults to "shopq"):

    {prefix}:job:{id}          hash    job fields
    {prefix}:{queue}:waiting   zset    due jobs, score = -priority * SPAN + sequence
    {prefix}:{queue}:delayed   zset    future jobs, score = eligible-at epoch ms
    {prefix}:{queue}:active    zset    claimed jobs, score = lock deadline epoch ms
    {prefix}:{queue}:completed zset    score = processed-at epoch ms
    {prefix}:{queue}:failed    zset    score = processed-at epoch ms
    {prefix}:{queue}:paused    string  present while paused
    {prefix}:seq               counter creation order across all queues

A claim takes the lowest score in `waiting` and, in one WATCH/MULTI
transaction, removes it, marks the hash active and sets its lock deadline, so
a job is handed to exactly one worker and a failed claim leaves it waiting.
Every later transition runs in a WATCH/MULTI transaction
on the job hash and checks that the caller still owns the job (status active
and the same attempt count).

Workers renew the lock deadline with heartbeat(); recover_stalled() requeues
jobs whose deadline passed, or fails them once they stalled more than
max_stalled_count times.
"""

import json
import logging
import os
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError

from .backend import QueueBackend, StatusFilter, STALL_ERROR_MESSAGE
from .config import (
    MAX_STALLED_COUNT,
    STALLED_INTERVAL_SECONDS,
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
    to_epoch_ms,
    to_iso,
    utc_now,
)
from .errors import (
    BackendUnavailableError,
    ConcurrencyViolationError,
    JobNotFoundError,
)


logger = logging.getLogger(__name__)


DEFAULT_KEY_PREFIX = "shopq"

# Sequence numbers must stay below this for priority bands not to overlap
PRIORITY_SCORE_SPAN = 10 ** 10


def create_redis_client(
    host: Optional[str] = None,
    port: Optional[int] = None,
    password: Optional[str] = None,
    db: Optional[int] = None,
) -> redis.Redis:
    """
    Build a Redis client from arguments, falling back to REDIS_* variables.

    Responses are decoded to str, which RedisQueueBackend relies on.
    """
    return redis.Redis(
        host=host or os.getenv("REDIS_HOST", "localhost"),
        port=int(port or os.getenv("REDIS_PORT", "6379")),
        password=password or os.getenv("REDIS_PASSWORD") or None,
        db=int(db if db is not None else os.getenv("REDIS_DB", "0")),
        decode_responses=True,
        socket_connect_timeout=10,
        socket_timeout=10,
        socket_keepalive=True,
        retry_on_timeout=True,
        health_check_interval=30,
    )


class RedisQueueBackend(QueueBackend):
    """
    Redis-backed queue with priority, delay and stall detection.

    The client must be created with decode_responses=True.
    """

    name = "redis"
    default_poll_interval = 0.5

    def __init__(
        self,
        client: redis.Redis,
        queue_settings: Optional[dict[str, QueueSettings]] = None,
        clock: Callable[[], datetime] = utc_now,
        max_stalled_count: int = MAX_STALLED_COUNT,
        stalled_interval_seconds: float = STALLED_INTERVAL_SECONDS,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ):
        """
        Initialize the broker backend.

        Args:
            client: Redis client (decode_responses=True)
            queue_settings: Queue catalogue
            clock: Returns the current aware UTC datetime
            max_stalled_count: Times a stalled job may be requeued before failing
            stalled_interval_seconds: Lock duration granted per claim/heartbeat
            key_prefix: Namespace for every key this backend writes
        """
        super().__init__(queue_settings, clock, max_stalled_count)
        self._client = client
        self.stalled_interval_seconds = stalled_interval_seconds
        self.key_prefix = key_prefix

    # =========================================================================
    # Keys and encoding
    # =========================================================================

    def _job_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:job:{job_id}"

    def _queue_key(self, queue_name: str, suffix: str) -> str:
        return f"{self.key_prefix}:{queue_name}:{suffix}"

    @staticmethod
    def _priority_score(priority: int, sequence: int) -> int:
        return -priority * PRIORITY_SCORE_SPAN + sequence

    def _lock_deadline_ms(self, now: datetime) -> int:
        return to_epoch_ms(now) + int(self.stalled_interval_seconds * 1000)

    @staticmethod
    def _encode(job: JobRecord) -> dict:
        return {
            "id": job.id,
            "queue_name": job.queue_name,
            "name": job.name,
            "payload": json.dumps(job.payload),
            "status": job.status.value,
            "attempts": job.attempts,
            "max_attempts": job.max_attempts,
            "priority": job.priority,
            "seq": job.sequence,
            "progress": job.progress,
            "stalled_count": job.stalled_count,
            "result": json.dumps(job.result) if job.result is not None else "",
            "error_message": job.error_message or "",
            "scheduled_at": to_iso(job.scheduled_at),
            "started_at": to_iso(job.started_at) if job.started_at else "",
            "processed_at": to_iso(job.processed_at) if job.processed_at else "",
            "created_at": to_iso(job.created_at),
            "updated_at": to_iso(job.updated_at),
        }

    @staticmethod
    def _decode(data: dict) -> JobRecord:
        return JobRecord(
            id=data["id"],
            queue_name=data["queue_name"],
            name=data["name"],
            payload=json.loads(data["payload"]),
            status=JobStatus(data["status"]),
            attempts=int(data["attempts"]),
            max_attempts=int(data["max_attempts"]),
            priority=int(data["priority"]),
            sequence=int(data["seq"]),
            progress=int(data["progress"]),
            stalled_count=int(data["stalled_count"]),
            result=json.loads(data["result"]) if data.get("result") else None,
            error_message=data.get("error_message") or None,
            scheduled_at=from_iso(data["scheduled_at"]),
            started_at=from_iso(data.get("started_at")),
            processed_at=from_iso(data.get("processed_at")),
            created_at=from_iso(data["created_at"]),
            updated_at=from_iso(data["updated_at"]),
        )

    def _load_many(self, job_ids: list[str]) -> list[JobRecord]:
        if not job_ids:
            return []
        with self._client.pipeline(transaction=False) as pipe:
            for job_id in job_ids:
                pipe.hgetall(self._job_key(job_id))
            rows = pipe.execute()
        return [self._decode(row) for row in rows if row]

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
            job.sequence = int(self._client.incr(f"{self.key_prefix}:seq"))
            with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_key(job.id), mapping=self._encode(job))
                if job.scheduled_at > job.created_at:
                    pipe.zadd(
                        self._queue_key(queue_name, "delayed"),
                        {job.id: to_epoch_ms(job.scheduled_at)},
                    )
                else:
                    pipe.zadd(
                        self._queue_key(queue_name, "waiting"),
                        {job.id: self._priority_score(job.priority, job.sequence)},
                    )
                pipe.execute()
        except RedisConnectionError as e:
            logger.error(f"Redis operation: enqueue_failed | error={str(e)}")
            raise BackendUnavailableError(self.name, str(e)) from e

        logger.info(
            f"Enqueued job {job.id} ({queue_name}/{job_name}, "
            f"priority={job.priority}, scheduled_at={to_iso(job.scheduled_at)})"
        )
        return job

    def _promote_delayed(self, queue_name: str, now_ms: int) -> int:
        """Move delayed jobs that became due into the waiting set."""
        delayed_key = self._queue_key(queue_name, "delayed")
        waiting_key = self._queue_key(queue_name, "waiting")

        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(delayed_key)
                    due = pipe.zrangebyscore(delayed_key, "-inf", now_ms)
                    if not due:
                        pipe.unwatch()
                        return 0

                    scores = {}
                    for job_id in due:
                        priority, sequence = pipe.hmget(self._job_key(job_id), "priority", "seq")
                        if priority is not None:
                            scores[job_id] = self._priority_score(int(priority), int(sequence))

                    pipe.multi()
                    pipe.zrem(delayed_key, *due)
                    if scores:
                        pipe.zadd(waiting_key, scores)
                    pipe.execute()
                    return len(scores)
                except WatchError:
                    continue

    def dequeue_next(self, queue_name: str) -> Optional[JobRecord]:
        if self.is_paused(queue_name):
            return None

        now = self._now()
        self._promote_delayed(queue_name, to_epoch_ms(now))

        waiting_key = self._queue_key(queue_name, "waiting")
        while True:
            head = self._client.zrange(waiting_key, 0, 0)
            if not head:
                return None
            try:
                job = self._activate(queue_name, head[0], now, waiting_key)
            except ConcurrencyViolationError as e:
                logger.warning(f"Skipping queue entry: {e}")
                continue
            if job is not None:
                return job

    def _activate(
        self,
        queue_name: str,
        job_id: str,
        now: datetime,
        source_key: str,
    ) -> Optional[JobRecord]:
        """
        Move a PENDING job from `source_key` to ACTIVE.

        Leaving the source set and entering the active set happen in one
        MULTI, so a failed claim leaves the job where it was.

        Returns:
            The activated job, or None if the entry was already taken or
            pointed at a missing job
        """
        job_key = self._job_key(job_id)
        now_iso = to_iso(now)

        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(job_key, source_key)
                    if pipe.zscore(source_key, job_id) is None:
                        pipe.unwatch()
                        return None

                    status = pipe.hget(job_key, "status")
                    if status != JobStatus.PENDING.value:
                        pipe.multi()
                        pipe.zrem(source_key, job_id)
                        pipe.execute()
                        if status is None:
                            logger.warning(f"Dropping queue entry for missing job {job_id}")
                            return None
                        raise ConcurrencyViolationError(job_id, JobStatus.PENDING.value, status)

                    pipe.multi()
                    pipe.zrem(source_key, job_id)
                    pipe.hset(job_key, mapping={
                        "status": JobStatus.ACTIVE.value,
                        "progress": 0,
                        "started_at": now_iso,
                        "updated_at": now_iso,
                    })
                    pipe.hincrby(job_key, "attempts", 1)
                    pipe.zadd(
                        self._queue_key(queue_name, "active"),
                        {job_id: self._lock_deadline_ms(now)},
                    )
                    pipe.execute()
                    break
                except WatchError:
                    continue

        return self.get_job(job_id)

    # =========================================================================
    # Job Transitions
    # =========================================================================

    def mark_active(self, job: JobRecord) -> JobRecord:
        now = self._now()
        for suffix in ("waiting", "delayed"):
            activated = self._activate(
                job.queue_name, job.id, now, self._queue_key(job.queue_name, suffix)
            )
            if activated is not None:
                return activated

        current = self.get_job(job.id)
        raise ConcurrencyViolationError(job.id, JobStatus.PENDING.value, current.status.value)

    def _owned_transition(self, job: JobRecord, apply: Callable) -> JobRecord:
        """
        Run `apply(pipe)` atomically while the caller still owns the job.

        Raises:
            JobNotFoundError: If the job hash is gone
            ConcurrencyViolationError: If the job is no longer ACTIVE under
                the caller's attempt
        """
        job_key = self._job_key(job.id)
        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(job_key)
                    status, attempts = pipe.hmget(job_key, "status", "attempts")
                    if status is None:
                        pipe.unwatch()
                        raise JobNotFoundError(job.id)
                    if status != JobStatus.ACTIVE.value or int(attempts) != job.attempts:
                        pipe.unwatch()
                        raise ConcurrencyViolationError(job.id, JobStatus.ACTIVE.value, status)

                    pipe.multi()
                    apply(pipe)
                    pipe.execute()
                    break
                except WatchError:
                    continue

        return self.get_job(job.id)

    def mark_completed(self, job: JobRecord, result: Optional[dict] = None) -> JobRecord:
        now = self._now()

        def apply(pipe):
            pipe.hset(self._job_key(job.id), mapping={
                "status": JobStatus.COMPLETED.value,
                "progress": 100,
                "result": json.dumps(result) if result is not None else "",
                "processed_at": to_iso(now),
                "updated_at": to_iso(now),
            })
            pipe.zrem(self._queue_key(job.queue_name, "active"), job.id)
            pipe.zadd(self._queue_key(job.queue_name, "completed"), {job.id: to_epoch_ms(now)})

        return self._owned_transition(job, apply)

    def mark_failed(
        self,
        job: JobRecord,
        error_message: str,
        retry_at: Optional[datetime] = None,
    ) -> JobRecord:
        now = self._now()

        def apply(pipe):
            pipe.zrem(self._queue_key(job.queue_name, "active"), job.id)
            if retry_at is None:
                pipe.hset(self._job_key(job.id), mapping={
                    "status": JobStatus.FAILED.value,
                    "error_message": error_message,
                    "processed_at": to_iso(now),
                    "updated_at": to_iso(now),
                })
                pipe.zadd(self._queue_key(job.queue_name, "failed"), {job.id: to_epoch_ms(now)})
                return

            pipe.hset(self._job_key(job.id), mapping={
                "status": JobStatus.PENDING.value,
                "error_message": error_message,
                "scheduled_at": to_iso(retry_at),
                "updated_at": to_iso(now),
            })
            if retry_at > now:
                pipe.zadd(
                    self._queue_key(job.queue_name, "delayed"),
                    {job.id: to_epoch_ms(retry_at)},
                )
            else:
                pipe.zadd(
                    self._queue_key(job.queue_name, "waiting"),
                    {job.id: self._priority_score(job.priority, job.sequence)},
                )

        return self._owned_transition(job, apply)

    def report_progress(self, job: JobRecord, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        now_iso = to_iso(self._now())

        def apply(pipe):
            pipe.hset(self._job_key(job.id), mapping={
                "progress": percent,
                "updated_at": now_iso,
            })

        self._owned_transition(job, apply)

    def heartbeat(self, job: JobRecord) -> None:
        now = self._now()

        def apply(pipe):
            pipe.hset(self._job_key(job.id), "updated_at", to_iso(now))
            pipe.zadd(
                self._queue_key(job.queue_name, "active"),
                {job.id: self._lock_deadline_ms(now)},
                xx=True,
            )

        self._owned_transition(job, apply)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_job(self, job_id: str) -> JobRecord:
        data = self._client.hgetall(self._job_key(job_id))
        if not data:
            raise JobNotFoundError(job_id)
        return self._decode(data)

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

        now_ms = to_epoch_ms(self._now())

        if status == JobState.WAITING:
            self._promote_delayed(queue_name, now_ms)
            job_ids = self._client.zrange(self._queue_key(queue_name, "waiting"), 0, limit - 1)
        elif status == JobState.DELAYED:
            job_ids = self._client.zrangebyscore(
                self._queue_key(queue_name, "delayed"),
                f"({now_ms}",
                "+inf",
                start=0,
                num=limit,
            )
        elif status == JobStatus.ACTIVE:
            job_ids = self._client.zrange(self._queue_key(queue_name, "active"), 0, limit - 1)
        else:
            job_ids = self._client.zrevrange(
                self._queue_key(queue_name, JobStatus(status).value), 0, limit - 1
            )

        return self._load_many(job_ids)

    def count_by_status(self, queue_name: str) -> QueueCounts:
        now_ms = to_epoch_ms(self._now())
        delayed_key = self._queue_key(queue_name, "delayed")

        with self._client.pipeline(transaction=False) as pipe:
            pipe.zcard(self._queue_key(queue_name, "waiting"))
            pipe.zcount(delayed_key, "-inf", now_ms)
            pipe.zcount(delayed_key, f"({now_ms}", "+inf")
            pipe.zcard(self._queue_key(queue_name, "active"))
            pipe.zcard(self._queue_key(queue_name, "completed"))
            pipe.zcard(self._queue_key(queue_name, "failed"))
            waiting, due, delayed, active, completed, failed = pipe.execute()

        return QueueCounts(
            waiting=waiting + due,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
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
        cutoff_ms = to_epoch_ms(self._now() - timedelta(milliseconds=older_than_ms))
        deleted = 0

        for status in statuses:
            if not JobStatus(status).is_terminal:
                raise ValueError(f"Only terminal jobs can be cleaned, got {status}")
            set_key = self._queue_key(queue_name, JobStatus(status).value)
            job_ids = self._client.zrangebyscore(
                set_key, "-inf", f"({cutoff_ms}", start=0, num=limit
            )
            if not job_ids:
                continue

            with self._client.pipeline(transaction=True) as pipe:
                pipe.zrem(set_key, *job_ids)
                pipe.delete(*[self._job_key(job_id) for job_id in job_ids])
                pipe.execute()
            deleted += len(job_ids)

        if deleted:
            logger.info(f"Cleaned {deleted} jobs from {queue_name}")
        return deleted

    def pause(self, queue_name: str) -> None:
        get_queue_settings(queue_name, self.queue_settings)
        self._client.set(self._queue_key(queue_name, "paused"), "1")
        logger.info(f"Queue paused: {queue_name}")

    def resume(self, queue_name: str) -> None:
        get_queue_settings(queue_name, self.queue_settings)
        self._client.delete(self._queue_key(queue_name, "paused"))
        logger.info(f"Queue resumed: {queue_name}")

    def is_paused(self, queue_name: str) -> bool:
        return bool(self._client.exists(self._queue_key(queue_name, "paused")))

    def recover_stalled(self, queue_name: str) -> StallReport:
        now = self._now()
        now_ms = to_epoch_ms(now)
        report = StallReport(queue_name=queue_name)

        expired = self._client.zrangebyscore(
            self._queue_key(queue_name, "active"), "-inf", f"({now_ms}"
        )
        for job_id in expired:
            outcome = self._recover_one(queue_name, job_id, now)
            if outcome == JobStatus.FAILED:
                report.failed.append(job_id)
            elif outcome == JobStatus.PENDING:
                report.requeued.append(job_id)

        return report

    def _recover_one(self, queue_name: str, job_id: str, now: datetime) -> Optional[JobStatus]:
        """Requeue or fail one stalled job; None if it is no longer stalled."""
        job_key = self._job_key(job_id)
        active_key = self._queue_key(queue_name, "active")
        now_ms = to_epoch_ms(now)

        with self._client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(job_key)
                    deadline = pipe.zscore(active_key, job_id)
                    data = pipe.hgetall(job_key)
                    if deadline is None or deadline >= now_ms or not data:
                        pipe.unwatch()
                        if not data and deadline is not None:
                            self._client.zrem(active_key, job_id)
                        return None

                    job = self._decode(data)
                    if job.status != JobStatus.ACTIVE:
                        pipe.unwatch()
                        return None
                    outcome = self._stall_outcome(job)

                    pipe.multi()
                    pipe.zrem(active_key, job_id)
                    pipe.hincrby(job_key, "stalled_count", 1)
                    if outcome == JobStatus.FAILED:
                        pipe.hset(job_key, mapping={
                            "status": JobStatus.FAILED.value,
                            "error_message": STALL_ERROR_MESSAGE,
                            "processed_at": to_iso(now),
                            "updated_at": to_iso(now),
                        })
                        pipe.zadd(self._queue_key(queue_name, "failed"), {job_id: now_ms})
                    else:
                        pipe.hset(job_key, mapping={
                            "status": JobStatus.PENDING.value,
                            "scheduled_at": to_iso(now),
                            "updated_at": to_iso(now),
                        })
                        pipe.zadd(
                            self._queue_key(queue_name, "waiting"),
                            {job_id: self._priority_score(job.priority, job.sequence)},
                        )
                    pipe.execute()
                    break
                except WatchError:
                    continue

        logger.warning(
            f"Job event: stalled | queue={queue_name} jobId={job_id} "
            f"jobName={job.name} stalledCount={job.stalled_count + 1} "
            f"outcome={outcome.value}"
        )
        return outcome

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError as e:
            logger.error(f"Redis operation: health_check_failed | error={str(e)}")
            return False

    def close(self) -> None:
        try:
            self._client.close()
        except RedisError as e:
            logger.error(f"Redis operation: connection_close_error | error={str(e)}")
