"""
test_scheduler.py — Tests for the scheduler's periodic sweeps.

Covers:
    • Promotion: due records claimed once, cancelled / future skipped,
      enqueue failure → failed (or pending when that write fails),
      unexpected enqueue error → pending, batch size
    • Concurrent promotion sweeps never double-enqueue
    • Scheduled campaigns launched by the promotion sweep, queue outage mid launch
    • Campaign completion conditions
    • Retention: age cutoff and status filters
    • APScheduler wiring (start / stop, sweep errors contained,
      stop drains running sweeps)

Run with:
    pytest tests/test_scheduler.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.core.errors import QueueUnavailableError, StoreUnavailableError
from backend.app.dispatch.campaigns import CampaignService
from backend.app.dispatch.job_queue import InMemoryJobQueue
from backend.app.dispatch.models import (
    Campaign,
    CampaignStatus,
    DeliveryLogEntry,
    LogStatus,
    NotificationTemplate,
    ScheduledNotification,
    ScheduledStatus,
)
from backend.app.dispatch.scheduler import DispatchScheduler
from backend.app.storage.memory import InMemoryStore

from fakes import FAST_POLICY

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class UnavailableQueue(InMemoryJobQueue):
    async def _push(self, job):
        raise QueueUnavailableError("connection refused")


class BrokenQueue(InMemoryJobQueue):
    async def _push(self, job):
        raise RuntimeError("serializer exploded")


class FailedMarkStore(InMemoryStore):
    """Refuses the first queued → failed write, as if the database dropped."""

    def __init__(self) -> None:
        super().__init__()
        self.refused = 0

    async def transition_scheduled(self, scheduled_id, from_statuses, to_status):
        if to_status == ScheduledStatus.FAILED and not self.refused:
            self.refused += 1
            raise StoreUnavailableError("connection lost")
        return await super().transition_scheduled(scheduled_id, from_statuses, to_status)


def _make_scheduler(store, queue, **kwargs) -> DispatchScheduler:
    kwargs.setdefault("campaigns", CampaignService(store, queue, retry_policy=FAST_POLICY))
    return DispatchScheduler(store, queue, retry_policy=FAST_POLICY, clock=lambda: NOW, **kwargs)


def _make_record(offset: timedelta = -timedelta(minutes=1), **overrides) -> ScheduledNotification:
    fields = dict(recipient="a@x.com", channel="email", message="hi", send_at=NOW + offset)
    fields.update(overrides)
    return ScheduledNotification(**fields)


def _make_log(status: LogStatus, age: timedelta) -> DeliveryLogEntry:
    return DeliveryLogEntry(
        job_id="job", recipient="a@x.com", channel="email", message="hi",
        status=status, attempt=1, created_at=NOW - age,
    )


async def _running_campaign(store, total=2, success=0, failure=0) -> Campaign:
    return await store.create_campaign(Campaign(
        name=f"c-{total}-{success}-{failure}", channel="sms",
        recipients=[str(i) for i in range(total)], total_recipients=total,
        success_count=success, failure_count=failure, status=CampaignStatus.RUNNING,
    ))


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Promotion Sweep
# ═══════════════════════════════════════════════════════════════════════════

class TestPromotion:

    @pytest.mark.asyncio
    async def test_promotes_only_due_pending_records(self, store, queue):
        due = [_make_record(), _make_record(-timedelta(hours=3))]
        future = _make_record(timedelta(minutes=5))
        cancelled = _make_record(status=ScheduledStatus.CANCELLED)
        await store.create_scheduled(due + [future, cancelled])

        promoted = await _make_scheduler(store, queue).promote_due()

        assert promoted == 2
        for record in due:
            assert (await store.get_scheduled(record.id)).status == ScheduledStatus.QUEUED
        assert (await store.get_scheduled(future.id)).status == ScheduledStatus.PENDING
        assert (await store.get_scheduled(cancelled.id)).status == ScheduledStatus.CANCELLED
        job_ids = {(await queue.dequeue(timeout=0.1)).job_id for _ in due}
        assert job_ids == {r.id for r in due}

    @pytest.mark.asyncio
    async def test_promoted_job_carries_policy_and_scheduled_id(self, store, queue):
        record = _make_record(subject="S", campaign_id=None)
        await store.create_scheduled([record])

        await _make_scheduler(store, queue).promote_due()

        job = await queue.dequeue(timeout=0.1)
        assert job.scheduled_id == record.id
        assert job.subject == "S"
        assert job.retry_policy == FAST_POLICY

    @pytest.mark.asyncio
    async def test_second_sweep_promotes_nothing(self, store, queue):
        await store.create_scheduled([_make_record()])
        scheduler = _make_scheduler(store, queue)
        assert await scheduler.promote_due() == 1
        assert await scheduler.promote_due() == 0
        assert await queue.size() == 1

    @pytest.mark.asyncio
    async def test_concurrent_sweeps_promote_each_record_once(self, store, queue):
        await store.create_scheduled([_make_record() for _ in range(20)])
        schedulers = [_make_scheduler(store, queue) for _ in range(3)]

        counts = await asyncio.gather(*(s.promote_due() for s in schedulers))

        assert sum(counts) == 20
        assert await queue.size() == 20

    @pytest.mark.asyncio
    async def test_enqueue_failure_marks_record_failed(self, store):
        queue = UnavailableQueue(FAST_POLICY)
        record = _make_record()
        await store.create_scheduled([record])

        promoted = await _make_scheduler(store, queue).promote_due()

        assert promoted == 0
        assert (await store.get_scheduled(record.id)).status == ScheduledStatus.FAILED

    @pytest.mark.asyncio
    async def test_unwritable_failed_mark_returns_record_to_pending(self):
        store = FailedMarkStore()
        record = _make_record()
        await store.create_scheduled([record])
        scheduler = _make_scheduler(store, UnavailableQueue(FAST_POLICY))

        assert await scheduler.promote_due() == 0

        assert store.refused == 1
        assert (await store.get_scheduled(record.id)).status == ScheduledStatus.PENDING
        assert [r.id for r in await store.find_due_scheduled(NOW, 10)] == [record.id]

    @pytest.mark.asyncio
    async def test_unexpected_enqueue_error_returns_record_to_pending(self, store):
        record = _make_record()
        await store.create_scheduled([record])

        with pytest.raises(RuntimeError):
            await _make_scheduler(store, BrokenQueue(FAST_POLICY)).promote_due()

        assert (await store.get_scheduled(record.id)).status == ScheduledStatus.PENDING

    @pytest.mark.asyncio
    async def test_batch_size_limits_one_sweep(self, store, queue):
        await store.create_scheduled([_make_record() for _ in range(5)])
        scheduler = _make_scheduler(store, queue, batch_size=2)
        assert await scheduler.promote_due() == 2
        assert await scheduler.promote_due() == 2
        assert await scheduler.promote_due() == 1


class TestCampaignLaunch:

    @pytest.mark.asyncio
    async def test_due_scheduled_campaign_is_started(self, store, queue):
        template = await store.create_template(
            NotificationTemplate(name="t", channel="sms", content="Sale today"),
        )
        campaign = await store.create_campaign(Campaign(
            name="sale", channel="sms", recipients=["1", "2"], total_recipients=2,
            template_id=template.id, status=CampaignStatus.SCHEDULED,
            scheduled_at=NOW - timedelta(minutes=1),
        ))

        await _make_scheduler(store, queue).promote_due()

        current = await store.get_campaign(campaign.id)
        assert current.status == CampaignStatus.RUNNING
        assert current.dispatched_count == 2
        assert await queue.size() == 2

    @pytest.mark.asyncio
    async def test_campaign_without_template_stays_scheduled(self, store, queue):
        campaign = await store.create_campaign(Campaign(
            name="broken", channel="sms", recipients=["1"], total_recipients=1,
            status=CampaignStatus.SCHEDULED, scheduled_at=NOW - timedelta(minutes=1),
        ))

        await _make_scheduler(store, queue).promote_due()

        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.SCHEDULED
        assert await queue.size() == 0

    @pytest.mark.asyncio
    async def test_queue_outage_leaves_campaign_running_at_cursor(self, store):
        queue = UnavailableQueue(FAST_POLICY)
        template = await store.create_template(
            NotificationTemplate(name="t", channel="sms", content="Sale today"),
        )
        campaign = await store.create_campaign(Campaign(
            name="outage", channel="sms", recipients=["1", "2"], total_recipients=2,
            template_id=template.id, status=CampaignStatus.SCHEDULED,
            scheduled_at=NOW - timedelta(minutes=1),
        ))

        assert await _make_scheduler(store, queue).promote_due() == 0

        current = await store.get_campaign(campaign.id)
        assert current.status == CampaignStatus.RUNNING
        assert current.dispatched_count == 0

    @pytest.mark.asyncio
    async def test_future_campaign_not_started(self, store, queue):
        campaign = await store.create_campaign(Campaign(
            name="later", channel="sms", recipients=["1"], total_recipients=1,
            status=CampaignStatus.SCHEDULED, scheduled_at=NOW + timedelta(hours=1),
        ))
        await _make_scheduler(store, queue).promote_due()
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.SCHEDULED


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Campaign Completion Sweep
# ═══════════════════════════════════════════════════════════════════════════

class TestCampaignCompletion:

    @pytest.mark.asyncio
    async def test_fully_settled_campaign_completes(self, store, queue):
        campaign = await _running_campaign(store, total=2, success=1, failure=1)

        completed = await _make_scheduler(store, queue).check_campaign_completion()

        assert completed == 1
        current = await store.get_campaign(campaign.id)
        assert current.status == CampaignStatus.COMPLETED
        assert current.completed_at == NOW

    @pytest.mark.asyncio
    async def test_unsettled_campaign_keeps_running(self, store, queue):
        campaign = await _running_campaign(store, total=3, success=2)
        assert await _make_scheduler(store, queue).check_campaign_completion() == 0
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.RUNNING

    @pytest.mark.asyncio
    async def test_outstanding_scheduled_records_block_completion(self, store, queue):
        campaign = await _running_campaign(store, total=1, success=1)
        await store.create_scheduled([_make_record(timedelta(hours=1), campaign_id=campaign.id)])

        assert await _make_scheduler(store, queue).check_campaign_completion() == 0
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.RUNNING

    @pytest.mark.asyncio
    async def test_paused_campaign_never_completes(self, store, queue):
        campaign = await _running_campaign(store, total=1, success=1)
        await store.transition_campaign(campaign.id, (CampaignStatus.RUNNING,), CampaignStatus.PAUSED)

        assert await _make_scheduler(store, queue).check_campaign_completion() == 0
        assert (await store.get_campaign(campaign.id)).status == CampaignStatus.PAUSED


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Retention Sweep
# ═══════════════════════════════════════════════════════════════════════════

class TestRetention:

    @pytest.mark.asyncio
    async def test_purges_old_terminal_logs_only(self, store, queue):
        await store.append_log(_make_log(LogStatus.SUCCESS, timedelta(days=31)))
        await store.append_log(_make_log(LogStatus.FAILED, timedelta(days=45)))
        await store.append_log(_make_log(LogStatus.PENDING, timedelta(days=60)))
        await store.append_log(_make_log(LogStatus.SUCCESS, timedelta(days=29)))

        removed = await _make_scheduler(store, queue).purge_expired()

        assert removed["logs"] == 2
        remaining = {e.status for e in await store.list_logs()}
        assert remaining == {LogStatus.PENDING, LogStatus.SUCCESS}

    @pytest.mark.asyncio
    async def test_purges_old_terminal_scheduled_records(self, store, queue):
        old = NOW - timedelta(days=31)
        sent = _make_record(status=ScheduledStatus.SENT, created_at=old)
        cancelled = _make_record(status=ScheduledStatus.CANCELLED, created_at=old)
        pending = _make_record(timedelta(days=400), created_at=old)
        recent = _make_record(status=ScheduledStatus.FAILED, created_at=NOW - timedelta(days=1))
        await store.create_scheduled([sent, cancelled, pending, recent])

        removed = await _make_scheduler(store, queue).purge_expired()

        assert removed["scheduled"] == 2
        assert await store.get_scheduled(sent.id) is None
        assert await store.get_scheduled(cancelled.id) is None
        assert await store.get_scheduled(pending.id) is not None
        assert await store.get_scheduled(recent.id) is not None

    @pytest.mark.asyncio
    async def test_retention_window_is_configurable(self, store, queue):
        await store.append_log(_make_log(LogStatus.SUCCESS, timedelta(days=8)))
        removed = await _make_scheduler(store, queue, retention_days=7).purge_expired()
        assert removed["logs"] == 1


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: APScheduler Wiring
# ═══════════════════════════════════════════════════════════════════════════

class TestSchedulerLifecycle:

    @pytest.mark.asyncio
    async def test_start_registers_three_sweeps(self, store, queue):
        scheduler = _make_scheduler(store, queue)

        await scheduler.start()
        try:
            assert scheduler.running
            job_ids = {job.id for job in scheduler._scheduler.get_jobs()}
            assert job_ids == {"promote_due", "campaign_completion", "retention"}
        finally:
            await scheduler.stop()

        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_failing_sweep_is_contained(self, store, queue):
        scheduler = _make_scheduler(store, queue)

        async def broken():
            raise RuntimeError("database went away")

        await scheduler._run_sweep("promotion", broken)

    @pytest.mark.asyncio
    async def test_stop_waits_for_running_sweep(self, store, queue):
        scheduler = _make_scheduler(store, queue)
        finished = []

        async def slow():
            await asyncio.sleep(0.05)
            finished.append("promotion")

        await scheduler.start()
        sweep = asyncio.create_task(scheduler._run_sweep("promotion", slow))
        await asyncio.sleep(0)
        await scheduler.stop(grace=1.0)

        assert finished == ["promotion"]
        assert sweep.done() and not sweep.cancelled()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_stop_cancels_sweep_past_grace(self, store, queue):
        scheduler = _make_scheduler(store, queue)

        async def stuck():
            await asyncio.sleep(10)

        await scheduler.start()
        sweep = asyncio.create_task(scheduler._run_sweep("retention", stuck))
        await asyncio.sleep(0)
        await scheduler.stop(grace=0.01)

        assert sweep.cancelled()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, store, queue):
        await _make_scheduler(store, queue).stop()
