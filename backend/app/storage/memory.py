"""
memory.py — In-process NotificationStore for development and tests.

Records are deep-copied on the way in and out so callers cannot mutate
stored state behind the store's back. A single asyncio.Lock makes every
compare-and-set and counter increment atomic with respect to other
coroutines (production: the SQL store).
"""

from __future__ import annotations

import asyncio
import copy
import itertools
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from backend.app.dispatch.models import (
    Campaign,
    CampaignStatus,
    DeliveryLogEntry,
    LogStatus,
    NotificationTemplate,
    OUTSTANDING_SCHEDULED_STATUSES,
    ScheduledNotification,
    ScheduledStatus,
    utcnow,
)
from backend.app.storage.base import NotificationStore


class InMemoryStore(NotificationStore):

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._templates: Dict[int, NotificationTemplate] = {}
        self._scheduled: Dict[str, ScheduledNotification] = {}
        self._logs: List[DeliveryLogEntry] = []
        self._campaigns: Dict[int, Campaign] = {}
        self._template_ids = itertools.count(1)
        self._log_ids = itertools.count(1)
        self._campaign_ids = itertools.count(1)

    # ── Templates ──

    async def create_template(self, template: NotificationTemplate) -> NotificationTemplate:
        async with self._lock:
            stored = copy.deepcopy(template)
            stored.id = next(self._template_ids)
            self._templates[stored.id] = stored
            return copy.deepcopy(stored)

    async def get_template(self, template_id: int) -> Optional[NotificationTemplate]:
        return copy.deepcopy(self._templates.get(template_id))

    # ── Scheduled notifications ──

    async def create_scheduled(
        self, records: List[ScheduledNotification],
    ) -> List[ScheduledNotification]:
        async with self._lock:
            for record in records:
                self._scheduled[record.id] = copy.deepcopy(record)
            return copy.deepcopy(records)

    async def get_scheduled(self, scheduled_id: str) -> Optional[ScheduledNotification]:
        return copy.deepcopy(self._scheduled.get(scheduled_id))

    async def find_due_scheduled(
        self, now: datetime, limit: int,
    ) -> List[ScheduledNotification]:
        due = [
            r for r in self._scheduled.values()
            if r.status == ScheduledStatus.PENDING and r.send_at <= now
        ]
        due.sort(key=lambda r: r.send_at)
        return copy.deepcopy(due[:limit])

    async def transition_scheduled(
        self,
        scheduled_id: str,
        from_statuses: Iterable[ScheduledStatus],
        to_status: ScheduledStatus,
    ) -> bool:
        async with self._lock:
            record = self._scheduled.get(scheduled_id)
            if record is None or record.status not in tuple(from_statuses):
                return False
            record.status = to_status
            record.updated_at = utcnow()
            return True

    async def count_outstanding_scheduled(self, campaign_id: int) -> int:
        return sum(
            1 for r in self._scheduled.values()
            if r.campaign_id == campaign_id and r.status in OUTSTANDING_SCHEDULED_STATUSES
        )

    async def purge_scheduled(
        self, before: datetime, statuses: Iterable[ScheduledStatus],
    ) -> int:
        statuses = tuple(statuses)
        async with self._lock:
            doomed = [
                rid for rid, r in self._scheduled.items()
                if r.created_at < before and r.status in statuses
            ]
            for rid in doomed:
                del self._scheduled[rid]
            return len(doomed)

    # ── Delivery log ──

    async def append_log(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        async with self._lock:
            stored = copy.deepcopy(entry)
            stored.id = next(self._log_ids)
            self._logs.append(stored)
            return copy.deepcopy(stored)

    async def latest_log(self, job_id: str) -> Optional[DeliveryLogEntry]:
        entries = [e for e in self._logs if e.job_id == job_id]
        if not entries:
            return None
        return copy.deepcopy(max(entries, key=lambda e: (e.attempt, e.id or 0)))

    async def list_logs(
        self,
        *,
        job_id: Optional[str] = None,
        campaign_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[DeliveryLogEntry]:
        entries = [
            e for e in self._logs
            if (job_id is None or e.job_id == job_id)
            and (campaign_id is None or e.campaign_id == campaign_id)
        ]
        if limit is not None:
            entries = entries[:limit]
        return copy.deepcopy(entries)

    async def purge_logs(self, before: datetime, statuses: Iterable[LogStatus]) -> int:
        statuses = tuple(statuses)
        async with self._lock:
            kept = [e for e in self._logs if not (e.created_at < before and e.status in statuses)]
            removed = len(self._logs) - len(kept)
            self._logs = kept
            return removed

    # ── Campaigns ──

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        async with self._lock:
            stored = copy.deepcopy(campaign)
            stored.id = next(self._campaign_ids)
            self._campaigns[stored.id] = stored
            return copy.deepcopy(stored)

    async def get_campaign(self, campaign_id: int) -> Optional[Campaign]:
        return copy.deepcopy(self._campaigns.get(campaign_id))

    async def find_campaign_by_name(
        self, name: str, user_id: Optional[int],
    ) -> Optional[Campaign]:
        for campaign in self._campaigns.values():
            if campaign.name == name and campaign.user_id == user_id:
                return copy.deepcopy(campaign)
        return None

    async def list_campaigns(
        self, status: Optional[CampaignStatus] = None,
    ) -> List[Campaign]:
        return copy.deepcopy([
            c for c in self._campaigns.values()
            if status is None or c.status == status
        ])

    async def find_due_campaigns(self, now: datetime) -> List[Campaign]:
        return copy.deepcopy([
            c for c in self._campaigns.values()
            if c.status == CampaignStatus.SCHEDULED
            and c.scheduled_at is not None
            and c.scheduled_at <= now
        ])

    async def update_campaign(
        self,
        campaign_id: int,
        allowed_statuses: Iterable[CampaignStatus],
        **fields: Any,
    ) -> bool:
        async with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None or campaign.status not in tuple(allowed_statuses):
                return False
            for key, value in fields.items():
                setattr(campaign, key, copy.deepcopy(value))
            campaign.updated_at = utcnow()
            return True

    async def transition_campaign(
        self,
        campaign_id: int,
        from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus,
        **stamps: Optional[datetime],
    ) -> bool:
        async with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None or campaign.status not in tuple(from_statuses):
                return False
            campaign.status = to_status
            for key, value in stamps.items():
                setattr(campaign, key, value)
            campaign.updated_at = utcnow()
            return True

    async def increment_campaign_counter(self, campaign_id: int, success: bool) -> bool:
        async with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None or campaign.settled_count >= campaign.total_recipients:
                return False
            if success:
                campaign.success_count += 1
            else:
                campaign.failure_count += 1
            return True

    async def claim_campaign_recipient(self, campaign_id: int, cursor: int) -> bool:
        async with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if (
                campaign is None
                or campaign.status != CampaignStatus.RUNNING
                or campaign.dispatched_count != cursor
                or cursor >= len(campaign.recipients)
            ):
                return False
            campaign.dispatched_count = cursor + 1
            return True

    async def release_campaign_recipient(self, campaign_id: int, cursor: int) -> bool:
        async with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None or campaign.dispatched_count != cursor + 1:
                return False
            campaign.dispatched_count = cursor
            return True

    async def delete_campaign(
        self, campaign_id: int, allowed_statuses: Iterable[CampaignStatus],
    ) -> bool:
        async with self._lock:
            campaign = self._campaigns.get(campaign_id)
            if campaign is None or campaign.status not in tuple(allowed_statuses):
                return False
            del self._campaigns[campaign_id]
            return True

    async def ping(self) -> bool:
        return True
