"""
base.py — Persistent store contract consumed by the dispatch engine.

The engine assumes a transactional store. Every status change is a
conditional update (compare-and-set on the current status) and campaign
counters change only through `increment_campaign_counter`, an atomic
increment guarded by the recipient total. Callers never read a counter,
add to it and write it back.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable, List, Optional

from backend.app.dispatch.models import (
    Campaign,
    CampaignStatus,
    DeliveryLogEntry,
    LogStatus,
    NotificationTemplate,
    ScheduledNotification,
    ScheduledStatus,
)


class NotificationStore(ABC):
    """Async persistence for templates, scheduled notifications, logs and campaigns."""

    # ── Templates ──

    @abstractmethod
    async def create_template(self, template: NotificationTemplate) -> NotificationTemplate: ...

    @abstractmethod
    async def get_template(self, template_id: int) -> Optional[NotificationTemplate]: ...

    # ── Scheduled notifications ──

    @abstractmethod
    async def create_scheduled(
        self, records: List[ScheduledNotification],
    ) -> List[ScheduledNotification]:
        """Insert records in one transaction."""

    @abstractmethod
    async def get_scheduled(self, scheduled_id: str) -> Optional[ScheduledNotification]: ...

    @abstractmethod
    async def find_due_scheduled(
        self, now: datetime, limit: int,
    ) -> List[ScheduledNotification]:
        """Pending records with send_at <= now, oldest first."""

    @abstractmethod
    async def transition_scheduled(
        self,
        scheduled_id: str,
        from_statuses: Iterable[ScheduledStatus],
        to_status: ScheduledStatus,
    ) -> bool:
        """Compare-and-set the status. False if the record was not in from_statuses."""

    @abstractmethod
    async def count_outstanding_scheduled(self, campaign_id: int) -> int:
        """Scheduled records of a campaign still pending or queued."""

    @abstractmethod
    async def purge_scheduled(
        self, before: datetime, statuses: Iterable[ScheduledStatus],
    ) -> int: ...

    # ── Delivery log ──

    @abstractmethod
    async def append_log(self, entry: DeliveryLogEntry) -> DeliveryLogEntry: ...

    @abstractmethod
    async def latest_log(self, job_id: str) -> Optional[DeliveryLogEntry]:
        """Entry with the highest attempt number for a job."""

    @abstractmethod
    async def list_logs(
        self,
        *,
        job_id: Optional[str] = None,
        campaign_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[DeliveryLogEntry]:
        """Entries in insertion order."""

    @abstractmethod
    async def purge_logs(self, before: datetime, statuses: Iterable[LogStatus]) -> int: ...

    # ── Campaigns ──

    @abstractmethod
    async def create_campaign(self, campaign: Campaign) -> Campaign: ...

    @abstractmethod
    async def get_campaign(self, campaign_id: int) -> Optional[Campaign]: ...

    @abstractmethod
    async def find_campaign_by_name(
        self, name: str, user_id: Optional[int],
    ) -> Optional[Campaign]: ...

    @abstractmethod
    async def list_campaigns(
        self, status: Optional[CampaignStatus] = None,
    ) -> List[Campaign]: ...

    @abstractmethod
    async def find_due_campaigns(self, now: datetime) -> List[Campaign]:
        """Campaigns in `scheduled` status whose scheduled_at <= now."""

    @abstractmethod
    async def update_campaign(
        self,
        campaign_id: int,
        allowed_statuses: Iterable[CampaignStatus],
        **fields: Any,
    ) -> bool:
        """Overwrite plain fields while the campaign is in one of allowed_statuses."""

    @abstractmethod
    async def transition_campaign(
        self,
        campaign_id: int,
        from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus,
        **stamps: Optional[datetime],
    ) -> bool:
        """Compare-and-set the status, also writing the given timestamps."""

    @abstractmethod
    async def increment_campaign_counter(self, campaign_id: int, success: bool) -> bool:
        """
        Atomically add one to success_count or failure_count.

        The increment only applies while success + failure < total, so the
        sum never exceeds the recipient total. False when not applied.
        """

    @abstractmethod
    async def claim_campaign_recipient(self, campaign_id: int, cursor: int) -> bool:
        """
        Move dispatched_count from cursor to cursor + 1.

        Applies only while the campaign is running, the cursor still reads
        cursor and recipients remain. The caller that gets True owns
        recipients[cursor].
        """

    @abstractmethod
    async def release_campaign_recipient(self, campaign_id: int, cursor: int) -> bool:
        """Undo a claim: move dispatched_count from cursor + 1 back to cursor."""

    @abstractmethod
    async def delete_campaign(
        self, campaign_id: int, allowed_statuses: Iterable[CampaignStatus],
    ) -> bool: ...

    # ── Lifecycle ──

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None
