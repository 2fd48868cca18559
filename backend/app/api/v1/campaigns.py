"""
FastAPI route: campaign lifecycle and analytics.

Provides endpoints to:
    GET    /api/v1/campaigns                  — list (optionally by status)
    POST   /api/v1/campaigns                  — create (draft or scheduled)
    GET    /api/v1/campaigns/{id}             — campaign with counters
    PUT    /api/v1/campaigns/{id}             — edit a draft/scheduled campaign
    POST   /api/v1/campaigns/{id}/start       — start and fan out
    POST   /api/v1/campaigns/{id}/pause       — stop the fan-out
    POST   /api/v1/campaigns/{id}/resume      — continue the fan-out
    GET    /api/v1/campaigns/{id}/analytics   — attempt-level statistics
    DELETE /api/v1/campaigns/{id}             — delete a draft

Completion is never requested over HTTP; the scheduler flips a running
campaign to completed once every recipient has a terminal outcome.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_runtime, get_user_id
from backend.app.api.schemas import CampaignCreate, CampaignUpdate
from backend.app.dispatch.models import CampaignStatus
from backend.app.runtime import DispatchRuntime

router = APIRouter(prefix="/api/v1/campaigns", tags=["campaigns"])


@router.get("")
async def list_campaigns(
    status: Optional[CampaignStatus] = Query(None),
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> List[Dict[str, Any]]:
    campaigns = await runtime.campaigns.list_campaigns(user_id, status)
    return [c.to_dict() for c in campaigns]


@router.post("", status_code=201)
async def create_campaign(
    body: CampaignCreate,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    campaign = await runtime.campaigns.create(
        name=body.name,
        channel=body.channel.value,
        recipients=body.recipients,
        user_id=user_id,
        template_id=body.template_id,
        description=body.description,
        scheduled_at=body.scheduled_at,
    )
    return {"message": "Campaign created", "campaign": campaign.to_dict()}


@router.get("/{campaign_id}")
async def get_campaign(
    campaign_id: int,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    campaign = await runtime.campaigns.get(campaign_id, user_id)
    return campaign.to_dict()


@router.put("/{campaign_id}")
async def update_campaign(
    campaign_id: int,
    body: CampaignUpdate,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    # Only forward what the caller actually sent
    changes = body.model_dump(exclude_unset=True)
    campaign = await runtime.campaigns.update(campaign_id, user_id, **changes)
    return {"message": "Campaign updated", "campaign": campaign.to_dict()}


@router.post("/{campaign_id}/start")
async def start_campaign(
    campaign_id: int,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    return await runtime.campaigns.start(campaign_id, user_id)


@router.post("/{campaign_id}/pause")
async def pause_campaign(
    campaign_id: int,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    campaign = await runtime.campaigns.pause(campaign_id, user_id)
    return {"message": "Campaign paused", "campaign": campaign.to_dict()}


@router.post("/{campaign_id}/resume")
async def resume_campaign(
    campaign_id: int,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    return await runtime.campaigns.resume(campaign_id, user_id)


@router.get("/{campaign_id}/analytics")
async def campaign_analytics(
    campaign_id: int,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    return await runtime.campaigns.analytics(campaign_id, user_id)


@router.delete("/{campaign_id}")
async def delete_campaign(
    campaign_id: int,
    runtime: DispatchRuntime = Depends(get_runtime),
    user_id: Optional[int] = Depends(get_user_id),
) -> Dict[str, Any]:
    await runtime.campaigns.delete(campaign_id, user_id)
    return {"message": "Campaign deleted"}
