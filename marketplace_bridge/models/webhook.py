"""
Domain models for inbound notifications and the orders they update.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REJECTED = "rejected"
    FAILED = "failed"
    RETURNED = "returned"


class WebhookEvent(BaseModel):
    """A notification captured verbatim before any parsing."""

    event_id: str = Field(default_factory=lambda: uuid4().hex)
    topic: Optional[str] = None
    resource_id: Optional[str] = None
    request_id: Optional[str] = None
    signature_header: Optional[str] = None
    signature_valid: Optional[bool] = None
    signature_strategy: Optional[str] = None
    raw_body: str
    query: Dict[str, str] = Field(default_factory=dict)
    status: WebhookStatus = WebhookStatus.PENDING
    retry_count: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    outcome: Optional[str] = None
    received_at: datetime = Field(default_factory=_utcnow)
    processed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    def summary(self) -> Dict[str, Any]:
        """Admin listing view; the raw body stays in the store."""
        return {
            "event_id": self.event_id,
            "topic": self.topic,
            "resource_id": self.resource_id,
            "request_id": self.request_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "last_error": self.last_error,
            "outcome": self.outcome,
            "signature_valid": self.signature_valid,
            "signature_strategy": self.signature_strategy,
            "received_at": self.received_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }


class Order(BaseModel):
    """The slice of the storefront order this service reconciles."""

    order_id: str
    external_reference: str
    payment_id: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    external_status: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utcnow)


class ResolvedResource(BaseModel):
    """What a resolver learned about the notified resource."""

    resource_id: str
    external_reference: Optional[str] = None
    external_status: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "Order",
    "OrderStatus",
    "ResolvedResource",
    "WebhookEvent",
    "WebhookStatus",
]
