"""
FastAPI route: notification templates.

    POST /api/v1/templates        — create
    GET  /api/v1/templates/{id}   — fetch
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from backend.app.api.deps import get_runtime, get_user_id
from backend.app.api.schemas import TemplateCreate
from backend.app.core.errors import NotFoundError
from backend.app.dispatch.models import NotificationTemplate
from backend.app.runtime import DispatchRuntime

router = APIRouter(prefix="/api/v1/templates", tags=["templates"])


@router.post("", status_code=201)
async def create_template(
    body: TemplateCreate,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    template = await runtime.store.create_template(NotificationTemplate(
        name=body.name,
        channel=body.channel.value,
        content=body.content,
        subject=body.subject,
        user_id=user_id,
        is_active=body.is_active,
    ))
    return template.to_dict()


@router.get("/{template_id}")
async def get_template(
    template_id: int,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    template = await runtime.store.get_template(template_id)
    if template is None or (user_id is not None and template.user_id not in (None, user_id)):
        raise NotFoundError("Template", id=template_id)
    return template.to_dict()
