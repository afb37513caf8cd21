"""
Webhook and delivery Pydantic schemas.
"""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime


class WebhookCreateRequest(BaseModel):
    """Register an organization webhook."""

    organization_id: str = Field(..., min_length=1, max_length=255)
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., description="http(s) endpoint receiving job outcomes")
    secret: Optional[str] = Field(None, description="HMAC signing secret")
    is_default: bool = Field(False, description="Use when no other target resolves")


class WebhookResponse(BaseModel):
    """Organization webhook (the secret is never returned)."""

    id: str
    organization_id: str
    name: str
    url: str
    is_default: bool
    has_secret: bool = False
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class DeliveryResponse(BaseModel):
    """Webhook delivery record."""

    id: str
    job_id: Optional[str] = None
    organization_id: str
    configuration_id: Optional[str] = None
    event_type: str
    target_url: str
    status: str
    attempts: int
    max_attempts: int
    response_status: Optional[int] = None
    error: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    last_attempt_at: Optional[datetime] = None
    next_attempt_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class DeadLetterListResponse(BaseModel):
    """Dead deliveries, newest first."""

    total: int
    items: List[DeliveryResponse]


class ReprocessResponse(BaseModel):
    """Result of re-enqueuing dead deliveries."""

    requeued: List[str] = Field(default_factory=list, description="Delivery ids re-enqueued")
    count: int = 0
