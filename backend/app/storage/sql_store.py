"""
sql_store.py — NotificationStore on SQLAlchemy 2.0 async sessions.

Every public method runs in its own short transaction. Status changes are
single `UPDATE ... WHERE status IN (...)` statements and the campaign
counters are `UPDATE ... SET x = x + 1 WHERE success + failure < total`,
so concurrent workers never lose an increment and never overshoot the
recipient total.

Driver errors (connection refused, pool exhausted, ...) are raised as
StoreUnavailableError.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, List, Optional

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.errors import StoreUnavailableError
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
from backend.app.storage.orm import (
    CampaignRow,
    NotificationLogRow,
    ScheduledNotificationRow,
    TemplateRow,
)

logger = logging.getLogger(__name__)


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _values(statuses: Iterable[Any]) -> List[str]:
    return [s.value for s in statuses]


# ── Row → record mappers ──

def _template(row: TemplateRow) -> NotificationTemplate:
    return NotificationTemplate(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        channel=row.channel,
        subject=row.subject,
        content=row.content,
        is_active=row.is_active,
        created_at=_utc(row.created_at),
    )


def _scheduled(row: ScheduledNotificationRow) -> ScheduledNotification:
    return ScheduledNotification(
        id=row.id,
        user_id=row.user_id,
        recipient=row.recipient,
        channel=row.channel,
        message=row.message,
        subject=row.subject,
        template_id=row.template_id,
        campaign_id=row.campaign_id,
        metadata=dict(row.extra or {}),
        send_at=_utc(row.send_at),
        status=ScheduledStatus(row.status),
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


def _log(row: NotificationLogRow) -> DeliveryLogEntry:
    return DeliveryLogEntry(
        id=row.id,
        job_id=row.job_id,
        user_id=row.user_id,
        recipient=row.recipient,
        channel=row.channel,
        message=row.message,
        subject=row.subject,
        template_id=row.template_id,
        campaign_id=row.campaign_id,
        metadata=dict(row.extra or {}),
        status=LogStatus(row.status),
        error=row.error,
        attempt=row.attempt,
        delivered_at=_utc(row.delivered_at),
        created_at=_utc(row.created_at),
    )


def _campaign(row: CampaignRow) -> Campaign:
    return Campaign(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        description=row.description,
        template_id=row.template_id,
        channel=row.channel,
        recipients=list(row.recipients or []),
        status=CampaignStatus(row.status),
        total_recipients=row.total_recipients,
        success_count=row.success_count,
        failure_count=row.failure_count,
        dispatched_count=row.dispatched_count,
        scheduled_at=_utc(row.scheduled_at),
        started_at=_utc(row.started_at),
        completed_at=_utc(row.completed_at),
        created_at=_utc(row.created_at),
        updated_at=_utc(row.updated_at),
    )


class SQLAlchemyStore(NotificationStore):

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except DBAPIError as exc:
            logger.error("Store operation failed: %s", exc)
            raise StoreUnavailableError(str(exc.orig or exc)) from exc

    # ── Templates ──

    async def create_template(self, template: NotificationTemplate) -> NotificationTemplate:
        async with self._transaction() as session:
            row = TemplateRow(
                user_id=template.user_id,
                name=template.name,
                channel=template.channel,
                subject=template.subject,
                content=template.content,
                is_active=template.is_active,
                created_at=template.created_at,
            )
            session.add(row)
            await session.flush()
            return _template(row)

    async def get_template(self, template_id: int) -> Optional[NotificationTemplate]:
        async with self._transaction() as session:
            row = await session.get(TemplateRow, template_id)
            return _template(row) if row else None

    # ── Scheduled notifications ──

    async def create_scheduled(
        self, records: List[ScheduledNotification],
    ) -> List[ScheduledNotification]:
        async with self._transaction() as session:
            session.add_all([
                ScheduledNotificationRow(
                    id=r.id,
                    user_id=r.user_id,
                    recipient=r.recipient,
                    channel=r.channel,
                    message=r.message,
                    subject=r.subject,
                    template_id=r.template_id,
                    campaign_id=r.campaign_id,
                    extra=r.metadata or None,
                    send_at=r.send_at,
                    status=r.status.value,
                    created_at=r.created_at,
                    updated_at=r.updated_at,
                )
                for r in records
            ])
        return records

    async def get_scheduled(self, scheduled_id: str) -> Optional[ScheduledNotification]:
        async with self._transaction() as session:
            row = await session.get(ScheduledNotificationRow, scheduled_id)
            return _scheduled(row) if row else None

    async def find_due_scheduled(
        self, now: datetime, limit: int,
    ) -> List[ScheduledNotification]:
        stmt = (
            select(ScheduledNotificationRow)
            .where(
                ScheduledNotificationRow.status == ScheduledStatus.PENDING.value,
                ScheduledNotificationRow.send_at <= now,
            )
            .order_by(ScheduledNotificationRow.send_at)
            .limit(limit)
        )
        async with self._transaction() as session:
            rows = (await session.scalars(stmt)).all()
            return [_scheduled(r) for r in rows]

    async def transition_scheduled(
        self,
        scheduled_id: str,
        from_statuses: Iterable[ScheduledStatus],
        to_status: ScheduledStatus,
    ) -> bool:
        stmt = (
            update(ScheduledNotificationRow)
            .where(
                ScheduledNotificationRow.id == scheduled_id,
                ScheduledNotificationRow.status.in_(_values(from_statuses)),
            )
            .values(status=to_status.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def count_outstanding_scheduled(self, campaign_id: int) -> int:
        stmt = (
            select(func.count())
            .select_from(ScheduledNotificationRow)
            .where(
                ScheduledNotificationRow.campaign_id == campaign_id,
                ScheduledNotificationRow.status.in_(_values(OUTSTANDING_SCHEDULED_STATUSES)),
            )
        )
        async with self._transaction() as session:
            return int(await session.scalar(stmt) or 0)

    async def purge_scheduled(
        self, before: datetime, statuses: Iterable[ScheduledStatus],
    ) -> int:
        stmt = (
            delete(ScheduledNotificationRow)
            .where(
                ScheduledNotificationRow.created_at < before,
                ScheduledNotificationRow.status.in_(_values(statuses)),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount

    # ── Delivery log ──

    async def append_log(self, entry: DeliveryLogEntry) -> DeliveryLogEntry:
        async with self._transaction() as session:
            row = NotificationLogRow(
                job_id=entry.job_id,
                user_id=entry.user_id,
                recipient=entry.recipient,
                channel=entry.channel,
                message=entry.message,
                subject=entry.subject,
                template_id=entry.template_id,
                campaign_id=entry.campaign_id,
                extra=entry.metadata or None,
                status=entry.status.value,
                error=entry.error,
                attempt=entry.attempt,
                delivered_at=entry.delivered_at,
                created_at=entry.created_at,
            )
            session.add(row)
            await session.flush()
            return _log(row)

    async def latest_log(self, job_id: str) -> Optional[DeliveryLogEntry]:
        stmt = (
            select(NotificationLogRow)
            .where(NotificationLogRow.job_id == job_id)
            .order_by(NotificationLogRow.attempt.desc(), NotificationLogRow.id.desc())
            .limit(1)
        )
        async with self._transaction() as session:
            row = await session.scalar(stmt)
            return _log(row) if row else None

    async def list_logs(
        self,
        *,
        job_id: Optional[str] = None,
        campaign_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[DeliveryLogEntry]:
        stmt = select(NotificationLogRow).order_by(NotificationLogRow.id)
        if job_id is not None:
            stmt = stmt.where(NotificationLogRow.job_id == job_id)
        if campaign_id is not None:
            stmt = stmt.where(NotificationLogRow.campaign_id == campaign_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._transaction() as session:
            return [_log(r) for r in (await session.scalars(stmt)).all()]

    async def purge_logs(self, before: datetime, statuses: Iterable[LogStatus]) -> int:
        stmt = (
            delete(NotificationLogRow)
            .where(
                NotificationLogRow.created_at < before,
                NotificationLogRow.status.in_(_values(statuses)),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount

    # ── Campaigns ──

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        async with self._transaction() as session:
            row = CampaignRow(
                user_id=campaign.user_id,
                name=campaign.name,
                description=campaign.description,
                template_id=campaign.template_id,
                channel=campaign.channel,
                recipients=list(campaign.recipients),
                status=campaign.status.value,
                total_recipients=campaign.total_recipients,
                success_count=campaign.success_count,
                failure_count=campaign.failure_count,
                dispatched_count=campaign.dispatched_count,
                scheduled_at=campaign.scheduled_at,
                created_at=campaign.created_at,
                updated_at=campaign.updated_at,
            )
            session.add(row)
            await session.flush()
            return _campaign(row)

    async def get_campaign(self, campaign_id: int) -> Optional[Campaign]:
        async with self._transaction() as session:
            row = await session.get(CampaignRow, campaign_id)
            return _campaign(row) if row else None

    async def find_campaign_by_name(
        self, name: str, user_id: Optional[int],
    ) -> Optional[Campaign]:
        owner = CampaignRow.user_id.is_(None) if user_id is None else CampaignRow.user_id == user_id
        stmt = select(CampaignRow).where(CampaignRow.name == name, owner).limit(1)
        async with self._transaction() as session:
            row = await session.scalar(stmt)
            return _campaign(row) if row else None

    async def list_campaigns(
        self, status: Optional[CampaignStatus] = None,
    ) -> List[Campaign]:
        stmt = select(CampaignRow).order_by(CampaignRow.id)
        if status is not None:
            stmt = stmt.where(CampaignRow.status == status.value)
        async with self._transaction() as session:
            return [_campaign(r) for r in (await session.scalars(stmt)).all()]

    async def find_due_campaigns(self, now: datetime) -> List[Campaign]:
        stmt = (
            select(CampaignRow)
            .where(
                CampaignRow.status == CampaignStatus.SCHEDULED.value,
                CampaignRow.scheduled_at.is_not(None),
                CampaignRow.scheduled_at <= now,
            )
            .order_by(CampaignRow.scheduled_at)
        )
        async with self._transaction() as session:
            return [_campaign(r) for r in (await session.scalars(stmt)).all()]

    async def update_campaign(
        self,
        campaign_id: int,
        allowed_statuses: Iterable[CampaignStatus],
        **fields: Any,
    ) -> bool:
        if "status" in fields and isinstance(fields["status"], CampaignStatus):
            fields["status"] = fields["status"].value
        stmt = (
            update(CampaignRow)
            .where(
                CampaignRow.id == campaign_id,
                CampaignRow.status.in_(_values(allowed_statuses)),
            )
            .values(**fields, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def transition_campaign(
        self,
        campaign_id: int,
        from_statuses: Iterable[CampaignStatus],
        to_status: CampaignStatus,
        **stamps: Optional[datetime],
    ) -> bool:
        stmt = (
            update(CampaignRow)
            .where(
                CampaignRow.id == campaign_id,
                CampaignRow.status.in_(_values(from_statuses)),
            )
            .values(status=to_status.value, updated_at=utcnow(), **stamps)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def increment_campaign_counter(self, campaign_id: int, success: bool) -> bool:
        if success:
            values = {"success_count": CampaignRow.success_count + 1}
        else:
            values = {"failure_count": CampaignRow.failure_count + 1}
        stmt = (
            update(CampaignRow)
            .where(
                CampaignRow.id == campaign_id,
                CampaignRow.success_count + CampaignRow.failure_count
                < CampaignRow.total_recipients,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def claim_campaign_recipient(self, campaign_id: int, cursor: int) -> bool:
        stmt = (
            update(CampaignRow)
            .where(
                CampaignRow.id == campaign_id,
                CampaignRow.status == CampaignStatus.RUNNING.value,
                CampaignRow.dispatched_count == cursor,
                CampaignRow.total_recipients > cursor,
            )
            .values(dispatched_count=cursor + 1)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def release_campaign_recipient(self, campaign_id: int, cursor: int) -> bool:
        stmt = (
            update(CampaignRow)
            .where(
                CampaignRow.id == campaign_id,
                CampaignRow.dispatched_count == cursor + 1,
            )
            .values(dispatched_count=cursor)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def delete_campaign(
        self, campaign_id: int, allowed_statuses: Iterable[CampaignStatus],
    ) -> bool:
        stmt = (
            delete(CampaignRow)
            .where(
                CampaignRow.id == campaign_id,
                CampaignRow.status.in_(_values(allowed_statuses)),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.rowcount == 1

    # ── Lifecycle ──

    async def ping(self) -> bool:
        try:
            async with self._transaction() as session:
                await session.execute(text("SELECT 1"))
            return True
        except StoreUnavailableError:
            return False
