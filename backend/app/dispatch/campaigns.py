"""
campaigns.py — Campaign lifecycle, fan-out and analytics.

A campaign sends one template to an ordered recipient list and tracks the
outcome as an aggregate. Counters are only ever changed by the worker
pool through the store's atomic increment; this module never writes them.

    create ──► draft / scheduled ──start──► running ──► completed
                                              │  ▲       (scheduler)
                                         pause│  │resume
                                              ▼  │
                                             paused

Fan-out claims one recipient at a time by moving `dispatched_count` forward
with a conditional update, then enqueues that recipient. A claim only
succeeds while the campaign is running, so pausing stops the fan-out at the
next recipient and resuming picks up from `dispatched_count`. Two fan-outs
of the same campaign (a resume racing a still-running start) split the
remaining recipients between them instead of sending any twice.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from backend.app.core.errors import (
    InvalidStateError,
    NotFoundError,
    QueueUnavailableError,
    ValidationError,
)
from backend.app.dispatch.job_queue import JobQueue
from backend.app.dispatch.models import (
    Campaign,
    CampaignStatus,
    Channel,
    LogStatus,
    NotificationJob,
    NotificationTemplate,
    RetryPolicy,
    utcnow,
)
from backend.app.storage.base import NotificationStore

logger = logging.getLogger(__name__)

_UNSET: Any = object()

EDITABLE_STATUSES = (CampaignStatus.DRAFT, CampaignStatus.SCHEDULED)
RECENT_FAILURES_LIMIT = 10


def _validate_channel(channel: str) -> None:
    if channel not in {c.value for c in Channel}:
        raise ValidationError(f"Unsupported channel: {channel}", field="channel")


class CampaignService:

    def __init__(
        self,
        store: NotificationStore,
        queue: JobQueue,
        *,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._store = store
        self._queue = queue
        self._retry_policy = retry_policy or RetryPolicy()

    # ── Queries ──

    async def get(self, campaign_id: int, user_id: Optional[int] = None) -> Campaign:
        campaign = await self._store.get_campaign(campaign_id)
        if campaign is None or (user_id is not None and campaign.user_id != user_id):
            raise NotFoundError("Campaign", id=campaign_id)
        return campaign

    async def list_campaigns(
        self,
        user_id: Optional[int] = None,
        status: Optional[CampaignStatus] = None,
    ) -> List[Campaign]:
        campaigns = await self._store.list_campaigns(status)
        return [c for c in campaigns if user_id is None or c.user_id == user_id]

    async def analytics(self, campaign_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        """Attempt-level statistics from the delivery log."""
        campaign = await self.get(campaign_id, user_id)
        logs = await self._store.list_logs(campaign_id=campaign_id)
        breakdown = Counter(entry.status.value for entry in logs)
        successful = breakdown.get(LogStatus.SUCCESS.value, 0)
        failures = [entry for entry in logs if entry.status == LogStatus.FAILED]
        failures.sort(key=lambda e: e.created_at, reverse=True)

        return {
            "campaign_id": campaign.id,
            "status": campaign.status.value,
            "total_recipients": campaign.total_recipients,
            "success_count": campaign.success_count,
            "failure_count": campaign.failure_count,
            "total_attempts": len(logs),
            "successful": successful,
            "failed": breakdown.get(LogStatus.FAILED.value, 0),
            "pending": breakdown.get(LogStatus.PENDING.value, 0),
            "success_rate": round(successful / len(logs) * 100, 2) if logs else 0.0,
            "status_breakdown": dict(breakdown),
            "recent_failures": [
                {
                    "recipient": e.recipient,
                    "error": e.error,
                    "attempt": e.attempt,
                    "created_at": e.created_at.isoformat(),
                }
                for e in failures[:RECENT_FAILURES_LIMIT]
            ],
        }

    # ── Lifecycle ──

    async def create(
        self,
        *,
        name: str,
        channel: str,
        recipients: List[str],
        user_id: Optional[int] = None,
        template_id: Optional[int] = None,
        description: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> Campaign:
        name = name.strip()
        if not name:
            raise ValidationError("Campaign name is required", field="name")
        _validate_channel(channel)
        if not recipients:
            raise ValidationError("A campaign needs at least one recipient", field="recipients")
        if template_id is not None:
            await self._require_template(template_id, channel)
        if await self._store.find_campaign_by_name(name, user_id) is not None:
            raise ValidationError("Campaign name already exists", field="name", name=name)

        campaign = await self._store.create_campaign(Campaign(
            name=name,
            channel=channel,
            recipients=list(recipients),
            user_id=user_id,
            template_id=template_id,
            description=description,
            total_recipients=len(recipients),
            scheduled_at=scheduled_at,
            status=CampaignStatus.SCHEDULED if scheduled_at else CampaignStatus.DRAFT,
        ))
        logger.info(
            "Campaign %s created (%s, %d recipients)", campaign.id, campaign.status.value,
            campaign.total_recipients,
            extra={"campaign_id": campaign.id, "recipient_count": campaign.total_recipients},
        )
        return campaign

    async def update(
        self,
        campaign_id: int,
        user_id: Optional[int] = None,
        *,
        name: Optional[str] = None,
        recipients: Optional[List[str]] = None,
        description: Optional[str] = _UNSET,
        scheduled_at: Optional[datetime] = _UNSET,
    ) -> Campaign:
        """
        Edit a draft or scheduled campaign.

        Passing scheduled_at=None unschedules the campaign back to draft.
        """
        campaign = await self.get(campaign_id, user_id)
        if campaign.status not in EDITABLE_STATUSES:
            raise InvalidStateError("campaign", campaign.status.value, "update", id=campaign_id)

        fields: Dict[str, Any] = {}
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError("Campaign name is required", field="name")
            if name != campaign.name:
                clash = await self._store.find_campaign_by_name(name, campaign.user_id)
                if clash is not None and clash.id != campaign_id:
                    raise ValidationError("Campaign name already exists", field="name", name=name)
            fields["name"] = name
        if recipients is not None:
            if not recipients:
                raise ValidationError("A campaign needs at least one recipient", field="recipients")
            fields["recipients"] = list(recipients)
            fields["total_recipients"] = len(recipients)
        if description is not _UNSET:
            fields["description"] = description
        if scheduled_at is not _UNSET:
            fields["scheduled_at"] = scheduled_at
            fields["status"] = CampaignStatus.SCHEDULED if scheduled_at else CampaignStatus.DRAFT

        if fields and not await self._store.update_campaign(campaign_id, EDITABLE_STATUSES, **fields):
            current = await self.get(campaign_id)
            raise InvalidStateError("campaign", current.status.value, "update", id=campaign_id)
        return await self.get(campaign_id)

    async def start(self, campaign_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        campaign = await self.get(campaign_id, user_id)
        if campaign.status not in EDITABLE_STATUSES:
            raise InvalidStateError("campaign", campaign.status.value, "start", id=campaign_id)
        if campaign.template_id is None:
            raise ValidationError("Campaign requires a template to start", field="template_id")
        template = await self._require_template(campaign.template_id, campaign.channel)

        started = await self._store.transition_campaign(
            campaign_id, EDITABLE_STATUSES, CampaignStatus.RUNNING, started_at=utcnow(),
        )
        if not started:
            current = await self.get(campaign_id)
            raise InvalidStateError("campaign", current.status.value, "start", id=campaign_id)

        logger.info("Campaign %s started", campaign_id, extra={"campaign_id": campaign_id})
        queued = await self._fan_out(campaign_id, template)
        return {"campaign": (await self.get(campaign_id)).to_dict(), "recipients_queued": queued}

    async def pause(self, campaign_id: int, user_id: Optional[int] = None) -> Campaign:
        campaign = await self.get(campaign_id, user_id)
        paused = await self._store.transition_campaign(
            campaign_id, (CampaignStatus.RUNNING,), CampaignStatus.PAUSED,
        )
        if not paused:
            raise InvalidStateError("campaign", campaign.status.value, "pause", id=campaign_id)
        logger.info("Campaign %s paused", campaign_id, extra={"campaign_id": campaign_id})
        return await self.get(campaign_id)

    async def resume(self, campaign_id: int, user_id: Optional[int] = None) -> Dict[str, Any]:
        campaign = await self.get(campaign_id, user_id)
        if campaign.status != CampaignStatus.PAUSED:
            raise InvalidStateError("campaign", campaign.status.value, "resume", id=campaign_id)
        template = await self._require_template(campaign.template_id, campaign.channel)
        resumed = await self._store.transition_campaign(
            campaign_id, (CampaignStatus.PAUSED,), CampaignStatus.RUNNING,
        )
        if not resumed:
            current = await self.get(campaign_id)
            raise InvalidStateError("campaign", current.status.value, "resume", id=campaign_id)

        logger.info(
            "Campaign %s resumed at recipient %d/%d", campaign_id,
            campaign.dispatched_count, campaign.total_recipients,
            extra={"campaign_id": campaign_id},
        )
        queued = await self._fan_out(campaign_id, template)
        return {"campaign": (await self.get(campaign_id)).to_dict(), "recipients_queued": queued}

    async def delete(self, campaign_id: int, user_id: Optional[int] = None) -> None:
        campaign = await self.get(campaign_id, user_id)
        if not await self._store.delete_campaign(campaign_id, (CampaignStatus.DRAFT,)):
            raise InvalidStateError("campaign", campaign.status.value, "delete", id=campaign_id)
        logger.info("Campaign %s deleted", campaign_id, extra={"campaign_id": campaign_id})

    async def launch_due(self, now: Optional[datetime] = None) -> int:
        """Start every scheduled campaign whose time has come. Called by the scheduler."""
        launched = 0
        for campaign in await self._store.find_due_campaigns(now or utcnow()):
            try:
                await self.start(campaign.id)
            except (InvalidStateError, ValidationError, NotFoundError) as exc:
                logger.error(
                    "Scheduled campaign %s could not start: %s", campaign.id, exc.message,
                    extra={"campaign_id": campaign.id},
                )
                continue
            except QueueUnavailableError as exc:
                logger.error(
                    "Scheduled campaign %s stopped mid fan-out: %s", campaign.id, exc.message,
                    extra={"campaign_id": campaign.id},
                )
                continue
            launched += 1
        return launched

    # ── Internals ──

    async def _require_template(
        self, template_id: Optional[int], channel: str,
    ) -> NotificationTemplate:
        template = await self._store.get_template(template_id) if template_id is not None else None
        if template is None or not template.is_active:
            raise ValidationError("Invalid template", field="template_id", template_id=template_id)
        if template.channel != channel:
            raise ValidationError(
                "Template channel mismatch", field="template_id",
                template_channel=template.channel, channel=channel,
            )
        return template

    async def _fan_out(self, campaign_id: int, template: NotificationTemplate) -> int:
        """
        Enqueue one job per remaining recipient while the campaign is running.

        A failed enqueue releases its claim and propagates, leaving the cursor
        at the first recipient not yet enqueued; pause and resume continue
        from there.
        """
        queued = 0
        while True:
            campaign = await self._store.get_campaign(campaign_id)
            if campaign is None or campaign.status != CampaignStatus.RUNNING:
                break
            cursor = campaign.dispatched_count
            if cursor >= len(campaign.recipients):
                break
            if not await self._store.claim_campaign_recipient(campaign_id, cursor):
                # Paused, or another fan-out took this recipient
                continue

            job = NotificationJob(
                recipient=campaign.recipients[cursor],
                channel=campaign.channel,
                message=template.content,
                subject=template.subject if campaign.channel == Channel.EMAIL.value else None,
                template_id=template.id,
                campaign_id=campaign_id,
                user_id=campaign.user_id,
            )
            try:
                await self._queue.enqueue(job, self._retry_policy)
            except Exception:
                if not await self._store.release_campaign_recipient(campaign_id, cursor):
                    logger.warning(
                        "Campaign %s moved past recipient %d before its enqueue failed; "
                        "it will not be sent", campaign_id, cursor,
                        extra={"campaign_id": campaign_id},
                    )
                raise
            queued += 1

        logger.info(
            "Campaign %s fan-out queued %d job(s)", campaign_id, queued,
            extra={"campaign_id": campaign_id, "recipient_count": queued},
        )
        return queued
