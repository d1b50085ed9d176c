"""
Queue Domain Entities.

- JobRecord: single unit of asynchronous work held by a queue backend
- JobOptions: per-enqueue overrides (priority, delay, attempt ceiling)
- JobResult: structured outcome returned by processors
- QueueCounts: per-queue statistics snapshot

Timestamps are timezone-aware UTC datetimes in memory and ISO-8601 strings
with a trailing "Z" at rest, so stored values sort lexicographically.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
import time
import uuid


ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Bounds accepted for job priority (higher = serviced first)
MIN_PRIORITY = 0
MAX_PRIORITY = 1000


class JobStatus(str, Enum):
    """
    Persisted job status.

    - PENDING: Waiting to run (possibly delayed until scheduled_at)
    - ACTIVE: Claimed by exactly one worker
    - COMPLETED: Finished successfully (terminal)
    - FAILED: Finished unsuccessfully with no retry budget left (terminal)
    """

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobState(str, Enum):
    """
    Transient sub-states of PENDING, exposed for listing and statistics.

    - WAITING: Eligible now (scheduled_at <= now)
    - DELAYED: Not eligible until scheduled_at
    """

    WAITING = "waiting"
    DELAYED = "delayed"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize an aware datetime to the stored ISO format."""
    return value.astimezone(timezone.utc).strftime(ISO_FORMAT)


def from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp, tolerating missing values."""
    if not value:
        return None
    return datetime.strptime(value, ISO_FORMAT).replace(tzinfo=timezone.utc)


def to_epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch, used as broker sort scores."""
    return int(value.timestamp() * 1000)


@dataclass
class JobOptions:
    """
    Optional per-job overrides applied at enqueue time.

    Unset values fall back to the queue's configured defaults.
    """

    priority: Optional[int] = None
    delay: int = 0  # milliseconds
    max_attempts: Optional[int] = None

    def __post_init__(self):
        if self.delay < 0:
            raise ValueError(f"delay must be >= 0, got {self.delay}")
        if self.max_attempts is not None and self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.priority is not None and not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ValueError(
                f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}, "
                f"got {self.priority}"
            )


@dataclass
class JobRecord:
    """
    Single unit of asynchronous work.

    `payload` is owned by the job: backends store a serialized copy and hand
    processors a freshly decoded one, so nothing downstream can change it.
    `attempts` counts activations; it doubles as the ownership token that
    terminal transitions are conditioned on.
    """

    id: str
    queue_name: str
    name: str
    payload: dict
    status: JobStatus
    scheduled_at: datetime
    created_at: datetime
    updated_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    priority: int = 0
    sequence: int = 0
    progress: int = 0
    stalled_count: int = 0
    started_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    result: Optional[dict] = None
    error_message: Optional[str] = None

    @classmethod
    def create(
        cls,
        queue_name: str,
        name: str,
        payload: dict,
        priority: int,
        max_attempts: int,
        now: datetime,
        delay_ms: int = 0,
    ) -> "JobRecord":
        """Create a new pending JobRecord with generated ID."""
        return cls(
            id=generate_uuid(),
            queue_name=queue_name,
            name=name,
            payload=payload,
            status=JobStatus.PENDING,
            scheduled_at=now + timedelta(milliseconds=delay_ms),
            created_at=now,
            updated_at=now,
            priority=priority,
            max_attempts=max_attempts,
        )

    def is_terminal(self) -> bool:
        """Check if job has reached a terminal status."""
        return self.status.is_terminal

    def state(self, now: datetime) -> str:
        """Status with the pending sub-state resolved against `now`."""
        if self.status != JobStatus.PENDING:
            return self.status.value
        if self.scheduled_at > now:
            return JobState.DELAYED.value
        return JobState.WAITING.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "name": self.name,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "priority": self.priority,
            "progress": self.progress,
            "stalled_count": self.stalled_count,
            "scheduled_at": to_iso(self.scheduled_at),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "started_at": to_iso(self.started_at) if self.started_at else None,
            "processed_at": to_iso(self.processed_at) if self.processed_at else None,
            "result": self.result,
            "error_message": self.error_message,
        }


@dataclass
class JobResult:
    """
    Structured processor outcome: {success, message, processedAt, data}.
    """

    message: str
    data: dict = field(default_factory=dict)
    success: bool = True
    processed_at: str = field(default_factory=lambda: to_iso(utc_now()))
    duration_ms: Optional[int] = None

    @classmethod
    def ok(
        cls,
        message: str,
        data: Optional[dict] = None,
        started: Optional[float] = None,
    ) -> "JobResult":
        """
        Build a successful result.

        Args:
            message: Human-readable summary
            data: Processor-specific result data
            started: time.monotonic() value captured when processing began
        """
        duration_ms = None
        if started is not None:
            duration_ms = int((time.monotonic() - started) * 1000)
        return cls(message=message, data=data or {}, duration_ms=duration_ms)

    def to_dict(self) -> dict[str, Any]:
        result = {
            "success": self.success,
            "message": self.message,
            "processedAt": self.processed_at,
            "data": self.data,
        }
        if self.duration_ms is not None:
            result["duration"] = self.duration_ms
        return result


@dataclass
class QueueCounts:
    """Job counts for one queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def to_dict(self) -> dict[str, int]:
        return {
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "total": self.total,
        }


@dataclass
class StallReport:
    """Outcome of one stalled-job recovery pass over a queue."""

    queue_name: str
    requeued: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
