"""
Queues router for job queue operations.

- GET /queues/stats - Per-queue counts
- GET /queues/health - Backend reachability and per-queue state
- POST /queues/cleanup - Delete old terminal jobs
- POST /queues/{queue}/jobs - Enqueue a job
- GET /queues/{queue}/jobs - List jobs by status
- GET /queues/{queue}/jobs/{job_id} - Get one job
- POST /queues/{queue}/pause - Stop handing out jobs
- POST /queues/{queue}/resume - Resume handing out jobs

Enqueueing only schedules work; the outcome is visible through these
endpoints, never pushed back to the caller.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query

from src.queueing.backend import parse_status_filter
from src.queueing.entities import JobStatus, utc_now
from src.queueing.errors import BackendUnavailableError, JobNotFoundError, UnknownJobKindError

from .._queue_state import get_queue_service
from ..schemas.queues import (
    CleanupRequest,
    CleanupResponse,
    EnqueueRequest,
    JobListResponse,
    JobResponse,
    QueueActionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _unknown_kind(e: UnknownJobKindError) -> HTTPException:
    if e.job_name is None:
        return HTTPException(status_code=404, detail=f"Queue not found: {e.queue_name}")
    return HTTPException(status_code=400, detail=str(e))


@router.get("/stats")
def get_queue_statistics():
    """
    Counts per queue: waiting, active, completed, failed, delayed, total.
    """
    return get_queue_service().get_statistics()


@router.get("/health")
def get_queue_health():
    """
    Backend reachability, paused flags and counts.

    Answers 503 when the backend is unreachable.
    """
    health = get_queue_service().check_health()
    if not health["healthy"]:
        raise HTTPException(status_code=503, detail=health)
    return health


@router.post("/cleanup", response_model=CleanupResponse)
def cleanup_queues(request: Optional[CleanupRequest] = None):
    """Delete completed and failed jobs older than the retention window."""
    request = request or CleanupRequest()
    return get_queue_service().cleanup(request.older_than_ms)


@router.post("/{queue_name}/jobs", response_model=JobResponse, status_code=202)
def enqueue_job(queue_name: str, request: EnqueueRequest):
    """
    Schedule a job.

    Returns as soon as the job is stored; 202 means scheduled, not done.
    """
    service = get_queue_service()

    try:
        job = service.enqueue(
            queue_name,
            request.name,
            request.payload,
            priority=request.priority,
            delay=request.delay,
            max_attempts=request.max_attempts,
        )
    except UnknownJobKindError as e:
        raise _unknown_kind(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except BackendUnavailableError as e:
        logger.error(f"Enqueue to {queue_name} failed: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    return JobResponse.from_record(job, job.state(utc_now()))


@router.get("/{queue_name}/jobs", response_model=JobListResponse)
def list_queue_jobs(
    queue_name: str,
    status: str = Query(default=JobStatus.PENDING.value, description="Status or waiting/delayed"),
    limit: int = Query(default=50, ge=1, le=500),
):
    """List jobs of one queue by status, most relevant first."""
    service = get_queue_service()

    try:
        status_filter = parse_status_filter(status)
        jobs = service.list_jobs(queue_name, status_filter, limit)
    except UnknownJobKindError as e:
        raise _unknown_kind(e)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    now = utc_now()
    return JobListResponse(
        jobs=[JobResponse.from_record(job, job.state(now)) for job in jobs],
        total=len(jobs),
    )


@router.get("/{queue_name}/jobs/{job_id}", response_model=JobResponse)
def get_queue_job(queue_name: str, job_id: str):
    """Get one job of a queue."""
    service = get_queue_service()

    try:
        job = service.get_job(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    if job.queue_name != queue_name:
        raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")

    return JobResponse.from_record(job, job.state(utc_now()))


@router.post("/{queue_name}/pause", response_model=QueueActionResponse)
def pause_queue(queue_name: str):
    """Pause a queue. Enqueues are still accepted."""
    try:
        get_queue_service().pause(queue_name)
    except UnknownJobKindError as e:
        raise _unknown_kind(e)
    return QueueActionResponse(queue=queue_name, paused=True, message=f"Queue {queue_name} paused")


@router.post("/{queue_name}/resume", response_model=QueueActionResponse)
def resume_queue(queue_name: str):
    """Resume a paused queue."""
    try:
        get_queue_service().resume(queue_name)
    except UnknownJobKindError as e:
        raise _unknown_kind(e)
    return QueueActionResponse(queue=queue_name, paused=False, message=f"Queue {queue_name} resumed")
