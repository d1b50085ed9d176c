"""
API Schemas package.

Pydantic models for request/response validation.
"""

from .queues import (
    EnqueueRequest,
    JobResponse,
    JobListResponse,
    QueueActionResponse,
    CleanupRequest,
    CleanupResponse,
)
from .webhooks import WebhookAcceptedResponse

__all__ = [
    "EnqueueRequest",
    "JobResponse",
    "JobListResponse",
    "QueueActionResponse",
    "CleanupRequest",
    "CleanupResponse",
    "WebhookAcceptedResponse",
]
