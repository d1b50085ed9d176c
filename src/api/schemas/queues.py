"""
Queue operation schemas.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.queueing.entities import MAX_PRIORITY, MIN_PRIORITY, JobRecord


class EnqueueRequest(BaseModel):
    """Request to schedule one job."""

    name: str = Field(..., description="Job name within the queue", json_schema_extra={"examples": ["send-email"]})
    payload: Dict[str, Any] = Field(default_factory=dict, description="Job payload")
    priority: Optional[int] = Field(
        default=None, ge=MIN_PRIORITY, le=MAX_PRIORITY,
        description="Higher runs first (default: queue priority)",
    )
    delay: int = Field(default=0, ge=0, description="Milliseconds before the job becomes eligible")
    max_attempts: Optional[int] = Field(
        default=None, ge=1, description="Attempt ceiling (default: queue setting)"
    )


class JobResponse(BaseModel):
    """Job record as stored by the backend."""

    id: str
    queue_name: str
    name: str
    payload: Dict[str, Any]
    status: str
    state: Optional[str] = Field(default=None, description="waiting or delayed for pending jobs")
    priority: int
    attempts: int
    max_attempts: int
    progress: int = 0
    stalled_count: int = 0
    scheduled_at: str
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    processed_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None

    @classmethod
    def from_record(cls, job: JobRecord, state: Optional[str] = None) -> "JobResponse":
        data = job.to_dict()
        data["state"] = state
        return cls.model_validate(data)


class JobListResponse(BaseModel):
    jobs: List[JobResponse]
    total: int = Field(..., description="Number of jobs returned")


class QueueActionResponse(BaseModel):
    queue: str
    paused: bool
    message: str


class CleanupRequest(BaseModel):
    older_than_ms: int = Field(
        default=24 * 60 * 60 * 1000, ge=0,
        description="Delete terminal jobs older than this many milliseconds",
    )


class CleanupResponse(BaseModel):
    queues: Dict[str, Dict[str, int]]
    total: int
    errors: List[str] = Field(default_factory=list)
