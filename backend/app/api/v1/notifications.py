"""
FastAPI route: notification submission and status.

Provides endpoints to:
    POST   /api/v1/notifications                  — send now or schedule
    POST   /api/v1/notifications/bulk             — same message, many recipients
    GET    /api/v1/notifications/{id}/status      — current status
    DELETE /api/v1/notifications/scheduled/{id}   — cancel a pending schedule
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_runtime, get_user_id
from backend.app.api.schemas import BulkNotificationCreate, NotificationCreate
from backend.app.dispatch.models import NotificationRequest
from backend.app.runtime import DispatchRuntime

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.post("", status_code=202)
async def submit_notification(
    body: NotificationCreate,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    """Queue a notification, or schedule it when send_at is in the future."""
    request = NotificationRequest(
        recipient=body.recipient,
        channel=body.channel,
        message=body.message,
        subject=body.subject,
        template_id=body.template_id,
        user_id=user_id,
        metadata=body.metadata,
    )
    result = await runtime.notifications.submit(request, send_at=body.send_at)
    return result.to_dict()


@router.post("/bulk", status_code=202)
async def submit_bulk(
    body: BulkNotificationCreate,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    request = NotificationRequest(
        recipient="",
        channel=body.channel,
        message=body.message,
        subject=body.subject,
        template_id=body.template_id,
        user_id=user_id,
        metadata=body.metadata,
    )
    result = await runtime.notifications.submit_bulk(body.recipients, request, send_at=body.send_at)
    return result.to_dict()


@router.get("/{notification_id}/status")
async def notification_status(
    notification_id: str,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    status = await runtime.notifications.status(notification_id, user_id)
    return status.to_dict()


@router.delete("/scheduled/{scheduled_id}")
async def cancel_scheduled(
    scheduled_id: str,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    record = await runtime.notifications.cancel(scheduled_id, user_id)
    return {"message": "Scheduled notification cancelled", "notification": record.to_dict()}
