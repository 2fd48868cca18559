"""
test_campaigns.py — Tests for campaign lifecycle, fan-out and analytics.

Covers:
    • Creation and validation (channel, recipients, template, unique name)
    • Start → fan-out, one job per recipient
    • End to end: worker outcomes drive the counters, scheduler completes
    • Pause / resume from the fan-out cursor, resume racing a running start
    • Partial fan-out on queue failure
    • Update / delete restrictions by status
    • Analytics from the delivery log

Run with:
    pytest tests/test_campaigns.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.errors import (
    InvalidStateError,
    NotFoundError,
    QueueUnavailableError,
    ValidationError,
)
from backend.app.dispatch.campaigns import CampaignService
from backend.app.dispatch.job_queue import InMemoryJobQueue
from backend.app.dispatch.models import CampaignStatus, NotificationTemplate
from backend.app.dispatch.scheduler import DispatchScheduler
from backend.app.dispatch.worker import WorkerPool

from fakes import FAST_POLICY, make_registry

RECIPIENTS = ["+15550000001", "+15550000002", "+15550000003"]


class FlakyQueue(InMemoryJobQueue):
    """Fails the Nth push (1-based) and every push after it."""

    def __init__(self, fail_from: int) -> None:
        super().__init__(FAST_POLICY)
        self.fail_from = fail_from
        self.pushes = 0

    async def _push(self, job):
        self.pushes += 1
        if self.pushes >= self.fail_from:
            raise QueueUnavailableError("connection reset")
        await super()._push(job)


class SlowQueue(InMemoryJobQueue):
    """Takes a moment per push and records every pushed recipient."""

    def __init__(self) -> None:
        super().__init__(FAST_POLICY)
        self.pushed = []

    async def _push(self, job):
        await asyncio.sleep(0.01)
        self.pushed.append(job.recipient)
        await super()._push(job)


class PausingQueue(InMemoryJobQueue):
    """Pauses the campaign as soon as the first job is pushed."""

    def __init__(self, store) -> None:
        super().__init__(FAST_POLICY)
        self._store = store

    async def _push(self, job):
        await super()._push(job)
        await self._store.transition_campaign(
            job.campaign_id, (CampaignStatus.RUNNING,), CampaignStatus.PAUSED,
        )


def _make_service(store, queue) -> CampaignService:
    return CampaignService(store, queue, retry_policy=FAST_POLICY)


async def _make_template(store, channel="sms", **overrides) -> NotificationTemplate:
    fields = dict(name="promo", channel=channel, content="20% off today", subject="Sale")
    fields.update(overrides)
    return await store.create_template(NotificationTemplate(**fields))


async def _make_campaign(service, store, **overrides):
    template = await _make_template(store)
    fields = dict(name="spring", channel="sms", recipients=list(RECIPIENTS), template_id=template.id)
    fields.update(overrides)
    return await service.create(**fields)


async def _drain(pool: WorkerPool) -> None:
    while await pool.process_next(timeout=0.05) is not None:
        pass


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:

    @pytest.mark.asyncio
    async def test_creates_draft(self, store, queue):
        campaign = await _make_campaign(_make_service(store, queue), store, user_id=4)
        assert campaign.id is not None
        assert campaign.status == CampaignStatus.DRAFT
        assert campaign.total_recipients == 3
        assert (campaign.success_count, campaign.failure_count) == (0, 0)
        assert campaign.user_id == 4

    @pytest.mark.asyncio
    async def test_scheduled_at_creates_scheduled(self, store, queue):
        at = datetime(2030, 1, 1, tzinfo=timezone.utc)
        campaign = await _make_campaign(_make_service(store, queue), store, scheduled_at=at)
        assert campaign.status == CampaignStatus.SCHEDULED
        assert campaign.scheduled_at == at

    @pytest.mark.asyncio
    async def test_unsupported_channel(self, store, queue):
        with pytest.raises(ValidationError, match="Unsupported channel"):
            await _make_service(store, queue).create(name="x", channel="fax", recipients=["1"])

    @pytest.mark.asyncio
    async def test_requires_recipients(self, store, queue):
        with pytest.raises(ValidationError):
            await _make_service(store, queue).create(name="x", channel="sms", recipients=[])

    @pytest.mark.asyncio
    async def test_requires_name(self, store, queue):
        with pytest.raises(ValidationError):
            await _make_service(store, queue).create(name="  ", channel="sms", recipients=["1"])

    @pytest.mark.asyncio
    async def test_template_channel_must_match(self, store, queue):
        template = await _make_template(store, channel="email")
        with pytest.raises(ValidationError, match="channel mismatch"):
            await _make_service(store, queue).create(
                name="x", channel="sms", recipients=["1"], template_id=template.id,
            )

    @pytest.mark.asyncio
    async def test_name_unique_per_user(self, store, queue):
        service = _make_service(store, queue)
        await service.create(name="dup", channel="sms", recipients=["1"], user_id=1)
        with pytest.raises(ValidationError, match="already exists"):
            await service.create(name="dup", channel="sms", recipients=["1"], user_id=1)
        other = await service.create(name="dup", channel="sms", recipients=["1"], user_id=2)
        assert other.user_id == 2


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Start and Fan-out
# ═══════════════════════════════════════════════════════════════════════════

class TestStart:

    @pytest.mark.asyncio
    async def test_start_enqueues_one_job_per_recipient(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)

        result = await service.start(campaign.id)

        assert result["recipients_queued"] == 3
        assert result["campaign"]["status"] == "running"
        assert result["campaign"]["started_at"] is not None
        jobs = [await queue.dequeue(timeout=0.1) for _ in RECIPIENTS]
        assert [j.recipient for j in jobs] == RECIPIENTS
        assert {j.campaign_id for j in jobs} == {campaign.id}
        assert {j.message for j in jobs} == {"20% off today"}
        assert {j.subject for j in jobs} == {None}

    @pytest.mark.asyncio
    async def test_start_requires_template(self, store, queue):
        service = _make_service(store, queue)
        campaign = await service.create(name="bare", channel="sms", recipients=["1"])
        with pytest.raises(ValidationError, match="requires a template"):
            await service.start(campaign.id)
        assert (await service.get(campaign.id)).status == CampaignStatus.DRAFT

    @pytest.mark.asyncio
    async def test_start_twice_is_invalid(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        await service.start(campaign.id)
        with pytest.raises(InvalidStateError):
            await service.start(campaign.id)
        assert await queue.size() == 3

    @pytest.mark.asyncio
    async def test_start_unknown_campaign(self, store, queue):
        with pytest.raises(NotFoundError):
            await _make_service(store, queue).start(404)

    @pytest.mark.asyncio
    async def test_queue_failure_leaves_cursor_at_first_unqueued(self, store):
        queue = FlakyQueue(fail_from=2)
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)

        with pytest.raises(QueueUnavailableError):
            await service.start(campaign.id)

        current = await service.get(campaign.id)
        assert current.status == CampaignStatus.RUNNING
        assert current.dispatched_count == 1
        assert await queue.size() == 1


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_outcomes_aggregate_and_campaign_completes(self, store, queue):
        registry, senders = make_registry(sms={RECIPIENTS[2]: -1, RECIPIENTS[0]: 1})
        service = _make_service(store, queue)
        pool = WorkerPool(queue, store, registry)
        scheduler = DispatchScheduler(store, queue, campaigns=service, retry_policy=FAST_POLICY)
        campaign = await _make_campaign(service, store)

        await service.start(campaign.id)
        assert await scheduler.check_campaign_completion() == 0
        await _drain(pool)

        current = await service.get(campaign.id)
        assert (current.success_count, current.failure_count) == (2, 1)
        assert await scheduler.check_campaign_completion() == 1
        completed = await service.get(campaign.id)
        assert completed.status == CampaignStatus.COMPLETED
        assert completed.completed_at is not None
        assert senders["sms"].calls_for(RECIPIENTS[2]) == 3

    @pytest.mark.asyncio
    async def test_analytics_counts_attempts(self, store, queue):
        registry, _ = make_registry(sms={RECIPIENTS[2]: -1, RECIPIENTS[0]: 1})
        service = _make_service(store, queue)
        pool = WorkerPool(queue, store, registry)
        campaign = await _make_campaign(service, store)
        await service.start(campaign.id)
        await _drain(pool)

        stats = await service.analytics(campaign.id)

        # 1 fail + 1 success, 1 success, 3 fails
        assert stats["total_attempts"] == 6
        assert stats["successful"] == 2
        assert stats["failed"] == 4
        assert stats["pending"] == 0
        assert stats["success_rate"] == 33.33
        assert stats["status_breakdown"] == {"success": 2, "failed": 4}
        assert len(stats["recent_failures"]) == 4
        assert (stats["success_count"], stats["failure_count"]) == (2, 1)

    @pytest.mark.asyncio
    async def test_analytics_without_logs(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        stats = await service.analytics(campaign.id)
        assert stats["total_attempts"] == 0
        assert stats["success_rate"] == 0.0


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Pause / Resume
# ═══════════════════════════════════════════════════════════════════════════

class TestPauseResume:

    @pytest.mark.asyncio
    async def test_pause_stops_fan_out_and_resume_continues(self, store):
        queue = PausingQueue(store)
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)

        started = await service.start(campaign.id)
        assert started["recipients_queued"] == 1
        assert (await service.get(campaign.id)).status == CampaignStatus.PAUSED

        resumed = await service.resume(campaign.id)

        # PausingQueue pauses again after each push
        assert resumed["recipients_queued"] == 1
        current = await service.get(campaign.id)
        assert current.dispatched_count == 2
        jobs = [await queue.dequeue(timeout=0.1) for _ in range(2)]
        assert [j.recipient for j in jobs] == RECIPIENTS[:2]

    @pytest.mark.asyncio
    async def test_resume_during_start_sends_each_recipient_once(self, store):
        queue = SlowQueue()
        service = _make_service(store, queue)
        recipients = [f"r{i}" for i in range(6)]
        campaign = await _make_campaign(service, store, recipients=recipients)

        first = asyncio.create_task(service.start(campaign.id))
        await asyncio.sleep(0.015)
        await service.pause(campaign.id)
        second = await service.resume(campaign.id)
        started = await first

        assert sorted(queue.pushed) == recipients
        assert started["recipients_queued"] + second["recipients_queued"] == 6
        current = await service.get(campaign.id)
        assert current.dispatched_count == 6
        assert current.status == CampaignStatus.RUNNING

    @pytest.mark.asyncio
    async def test_resume_finishes_remaining_recipients(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        await store.transition_campaign(campaign.id, (CampaignStatus.DRAFT,), CampaignStatus.PAUSED)

        result = await service.resume(campaign.id)

        assert result["recipients_queued"] == 3
        assert result["campaign"]["status"] == "running"

    @pytest.mark.asyncio
    async def test_pause_requires_running(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        with pytest.raises(InvalidStateError):
            await service.pause(campaign.id)

    @pytest.mark.asyncio
    async def test_resume_requires_paused(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        await service.start(campaign.id)
        with pytest.raises(InvalidStateError):
            await service.resume(campaign.id)

    @pytest.mark.asyncio
    async def test_pause_running(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        await service.start(campaign.id)
        paused = await service.pause(campaign.id)
        assert paused.status == CampaignStatus.PAUSED


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Update / Delete / Queries
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdate:

    @pytest.mark.asyncio
    async def test_update_fields(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)

        updated = await service.update(
            campaign.id, name="summer", recipients=["1", "2"], description="new",
        )

        assert updated.name == "summer"
        assert updated.total_recipients == 2
        assert updated.description == "new"

    @pytest.mark.asyncio
    async def test_schedule_and_unschedule(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        at = datetime.now(timezone.utc) + timedelta(days=1)

        scheduled = await service.update(campaign.id, scheduled_at=at)
        assert scheduled.status == CampaignStatus.SCHEDULED

        draft = await service.update(campaign.id, scheduled_at=None)
        assert draft.status == CampaignStatus.DRAFT
        assert draft.scheduled_at is None

    @pytest.mark.asyncio
    async def test_running_campaign_is_read_only(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        await service.start(campaign.id)
        with pytest.raises(InvalidStateError):
            await service.update(campaign.id, name="late")

    @pytest.mark.asyncio
    async def test_rename_clash(self, store, queue):
        service = _make_service(store, queue)
        await service.create(name="taken", channel="sms", recipients=["1"])
        campaign = await service.create(name="mine", channel="sms", recipients=["1"])
        with pytest.raises(ValidationError, match="already exists"):
            await service.update(campaign.id, name="taken")


class TestDeleteAndQueries:

    @pytest.mark.asyncio
    async def test_delete_draft(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        await service.delete(campaign.id)
        with pytest.raises(NotFoundError):
            await service.get(campaign.id)

    @pytest.mark.asyncio
    async def test_delete_running_is_invalid(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store)
        await service.start(campaign.id)
        with pytest.raises(InvalidStateError):
            await service.delete(campaign.id)

    @pytest.mark.asyncio
    async def test_get_scoped_to_owner(self, store, queue):
        service = _make_service(store, queue)
        campaign = await _make_campaign(service, store, user_id=1)
        assert (await service.get(campaign.id, user_id=1)).id == campaign.id
        with pytest.raises(NotFoundError):
            await service.get(campaign.id, user_id=2)

    @pytest.mark.asyncio
    async def test_list_filters(self, store, queue):
        service = _make_service(store, queue)
        first = await _make_campaign(service, store, name="a", user_id=1)
        await _make_campaign(service, store, name="b", user_id=2)
        await service.start(first.id)

        assert [c.name for c in await service.list_campaigns(user_id=1)] == ["a"]
        running = await service.list_campaigns(status=CampaignStatus.RUNNING)
        assert [c.name for c in running] == ["a"]
        assert len(await service.list_campaigns()) == 2
