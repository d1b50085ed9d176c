"""
Webhook ingestion schemas.
"""

from pydantic import BaseModel, Field


class WebhookAcceptedResponse(BaseModel):
    """Webhook scheduled for processing (not yet processed)."""

    webhook_id: str = Field(..., description="Stored webhook record id")
    job_id: str = Field(..., description="Queued process-webhook job id")
    topic: str
    shop_domain: str
    message: str = Field(default="Webhook accepted for processing")
