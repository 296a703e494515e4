"""Schemas for the webhook endpoint and its admin tooling."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WebhookAck(BaseModel):
    """Acknowledgement sent to the notification sender."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    request_id: Optional[str] = Field(None, alias="requestId")
    message: str


class WebhookRetryResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    event_id: str = Field(..., alias="eventId")
    status: str
    retried_at: datetime = Field(..., alias="retriedAt")


class WebhookEventList(BaseModel):
    events: List[Dict[str, Any]]
    count: int


class RedriveResult(BaseModel):
    processed: int
    results: List[Dict[str, str]] = Field(default_factory=list)


__all__ = [
    "RedriveResult",
    "WebhookAck",
    "WebhookEventList",
    "WebhookRetryResponse",
]
