"""
Pydantic schemas for the dispatch HTTP API.

Separated from the route handlers so they are reusable across the
codebase (tests, client scripts).

`channel` on notification requests is a free string on purpose: an
unsupported channel is accepted and fails in the worker pool, where the
failure is logged and visible through the status endpoint.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from backend.app.dispatch.models import Channel


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class NotificationCreate(BaseModel):
    """Request body for POST /api/v1/notifications."""
    recipient: str = Field(
        ..., min_length=1,
        description="Email address, phone number (E.164) or user id for in-app",
        examples=["a@x.com"],
    )
    channel: str = Field(..., min_length=1, examples=["email"])
    message: str = Field(
        "", description="Body text; taken from the template when empty",
        examples=["hi"],
    )
    subject: Optional[str] = Field(None, description="Email only")
    template_id: Optional[int] = None
    send_at: Optional[datetime] = Field(
        None, description="ISO 8601; absent or past means send now",
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)


class BulkNotificationCreate(BaseModel):
    """Request body for POST /api/v1/notifications/bulk."""
    recipients: List[str] = Field(..., min_length=1)
    channel: str = Field(..., min_length=1)
    message: str = ""
    subject: Optional[str] = None
    template_id: Optional[int] = None
    send_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("recipients")
    @classmethod
    def no_blank_recipients(cls, v: List[str]) -> List[str]:
        if any(not r.strip() for r in v):
            raise ValueError("recipients must not contain blank entries")
        return v


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------

class CampaignCreate(BaseModel):
    """Request body for POST /api/v1/campaigns."""
    name: str = Field(..., min_length=1, max_length=200, examples=["Spring launch"])
    channel: Channel = Field(..., examples=["sms"])
    recipients: List[str] = Field(..., min_length=1)
    template_id: Optional[int] = None
    description: Optional[str] = None
    scheduled_at: Optional[datetime] = Field(
        None, description="Creates the campaign in 'scheduled' status",
    )


class CampaignUpdate(BaseModel):
    """
    Request body for PUT /api/v1/campaigns/{id}.

    Only fields present in the body are changed; an explicit
    `"scheduled_at": null` moves a scheduled campaign back to draft.
    """
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    recipients: Optional[List[str]] = Field(None, min_length=1)
    description: Optional[str] = None
    scheduled_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class TemplateCreate(BaseModel):
    """Request body for POST /api/v1/templates."""
    name: str = Field(..., min_length=1, max_length=200)
    channel: Channel
    content: str = Field(..., min_length=1)
    subject: Optional[str] = None
    is_active: bool = True
