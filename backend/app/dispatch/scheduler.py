"""
scheduler.py — Time-driven sweeps over the persistent store.

═══════════════════════════════════════════════════════════════════════════
SWEEPS
═══════════════════════════════════════════════════════════════════════════

1. PROMOTION (every 60s)
   - Claim each due pending scheduled notification (pending → queued,
     conditional, so a record is promoted at most once)
   - Enqueue its job (3 attempts, base 10s); queue unavailable → failed,
     any other enqueue error → back to pending. If the failed mark cannot
     be written, the record is returned to pending instead; no record is
     left queued without a job
   - Launch campaigns in `scheduled` status whose time has come

2. CAMPAIGN COMPLETION (every 5 min)
   - A running campaign becomes completed once success + failure has
     reached the recipient total and none of its scheduled notifications
     are still pending or queued

3. RETENTION (daily, 02:00 UTC)
   - Delete success/failed log entries older than 30 days
   - Delete sent/failed/cancelled scheduled notifications older than
     30 days; pending log entries are kept

Sweeps run on APScheduler's AsyncIOScheduler inside the service's event
loop. Each job has max_instances=1 and coalesce=True: a sweep never
overlaps with itself, and missed ticks collapse into one run. A failing
sweep is logged and its records are left for the next tick.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from backend.app.core.errors import QueueUnavailableError, StoreUnavailableError
from backend.app.core.logging_config import set_log_context
from backend.app.dispatch.job_queue import JobQueue
from backend.app.dispatch.models import (
    CampaignStatus,
    RetryPolicy,
    ScheduledStatus,
    TERMINAL_LOG_STATUSES,
    TERMINAL_SCHEDULED_STATUSES,
    utcnow,
)
from backend.app.storage.base import NotificationStore

if TYPE_CHECKING:
    from backend.app.dispatch.campaigns import CampaignService

logger = logging.getLogger(__name__)


class DispatchScheduler:
    """Owns the three periodic sweeps and their APScheduler jobs."""

    def __init__(
        self,
        store: NotificationStore,
        queue: JobQueue,
        *,
        campaigns: Optional["CampaignService"] = None,
        retry_policy: Optional[RetryPolicy] = None,
        promotion_interval_seconds: int = 60,
        completion_interval_seconds: int = 300,
        retention_hour: int = 2,
        retention_days: int = 30,
        batch_size: int = 500,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._campaigns = campaigns
        self._retry_policy = retry_policy or RetryPolicy()
        self._promotion_interval = promotion_interval_seconds
        self._completion_interval = completion_interval_seconds
        self._retention_hour = retention_hour
        self.retention_days = retention_days
        self._batch_size = batch_size
        self._clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._in_flight: Set["asyncio.Task[None]"] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    # ── Sweep 1: promotion ──

    async def promote_due(self, now: Optional[datetime] = None) -> int:
        """Move due scheduled notifications onto the job queue. Returns the count."""
        now = now or self._clock()
        due = await self._store.find_due_scheduled(now, self._batch_size)
        promoted = 0

        for record in due:
            claimed = await self._store.transition_scheduled(
                record.id, (ScheduledStatus.PENDING,), ScheduledStatus.QUEUED,
            )
            if not claimed:
                # Cancelled or claimed by another scheduler since the read
                continue
            try:
                await self._queue.enqueue(record.to_job(self._retry_policy), self._retry_policy)
            except QueueUnavailableError as exc:
                logger.error(
                    "Could not enqueue scheduled notification %s: %s",
                    record.id, exc.message, extra={"scheduled_id": record.id},
                )
                await self._release_claim(record.id, ScheduledStatus.FAILED)
                continue
            except Exception:
                await self._release_claim(record.id, ScheduledStatus.PENDING)
                raise
            promoted += 1

        if promoted:
            logger.info("Promoted %d scheduled notification(s)", promoted)

        if self._campaigns is not None:
            await self._campaigns.launch_due(now)
        return promoted

    async def _release_claim(self, scheduled_id: str, to_status: ScheduledStatus) -> None:
        """Move a claimed record whose job never reached the queue out of queued."""
        try:
            await self._store.transition_scheduled(
                scheduled_id, (ScheduledStatus.QUEUED,), to_status,
            )
            return
        except StoreUnavailableError as exc:
            logger.warning(
                "Could not mark scheduled notification %s %s (%s); returning it to pending",
                scheduled_id, to_status.value, exc.message,
                extra={"scheduled_id": scheduled_id},
            )
        await self._store.transition_scheduled(
            scheduled_id, (ScheduledStatus.QUEUED,), ScheduledStatus.PENDING,
        )

    # ── Sweep 2: campaign completion ──

    async def check_campaign_completion(self, now: Optional[datetime] = None) -> int:
        """Mark finished running campaigns completed. Returns the count."""
        now = now or self._clock()
        completed = 0

        for campaign in await self._store.list_campaigns(CampaignStatus.RUNNING):
            if campaign.settled_count < campaign.total_recipients:
                continue
            if await self._store.count_outstanding_scheduled(campaign.id) > 0:
                continue
            done = await self._store.transition_campaign(
                campaign.id, (CampaignStatus.RUNNING,), CampaignStatus.COMPLETED,
                completed_at=now,
            )
            if done:
                completed += 1
                logger.info(
                    "Campaign %s completed: %d delivered, %d failed of %d",
                    campaign.id, campaign.success_count, campaign.failure_count,
                    campaign.total_recipients,
                    extra={"campaign_id": campaign.id},
                )
        return completed

    # ── Sweep 3: retention ──

    async def purge_expired(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self._clock()
        cutoff = now - timedelta(days=self.retention_days)
        removed = {
            "logs": await self._store.purge_logs(cutoff, TERMINAL_LOG_STATUSES),
            "scheduled": await self._store.purge_scheduled(cutoff, TERMINAL_SCHEDULED_STATUSES),
        }
        logger.info(
            "Retention sweep removed %d log entries and %d scheduled notifications older than %s",
            removed["logs"], removed["scheduled"], cutoff.date().isoformat(),
        )
        return removed

    # ── APScheduler wiring ──

    async def _run_sweep(self, name: str, sweep: Callable[[], Awaitable[object]]) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)
        set_log_context(sweep=name)
        try:
            await sweep()
        except Exception:
            logger.exception("%s sweep failed; will retry next tick", name)
        finally:
            set_log_context()
            self._in_flight.discard(task)

    async def start(self) -> None:
        if self.running:
            return
        scheduler = AsyncIOScheduler(
            timezone="UTC",
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": 60},
        )
        scheduler.add_job(
            self._run_sweep,
            trigger="interval",
            seconds=self._promotion_interval,
            args=["promotion", self.promote_due],
            id="promote_due",
            replace_existing=True,
        )
        scheduler.add_job(
            self._run_sweep,
            trigger="interval",
            seconds=self._completion_interval,
            args=["campaign_completion", self.check_campaign_completion],
            id="campaign_completion",
            replace_existing=True,
        )
        scheduler.add_job(
            self._run_sweep,
            trigger="cron",
            hour=self._retention_hour,
            minute=0,
            args=["retention", self.purge_expired],
            id="retention",
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Scheduler started: promotion every %ds, completion every %ds, retention daily at %02d:00 UTC",
            self._promotion_interval, self._completion_interval, self._retention_hour,
        )

    async def stop(self, grace: float = 30.0) -> None:
        """Stop firing sweeps, then wait up to grace seconds for running ones."""
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.pause()

        in_flight = set(self._in_flight)
        if in_flight:
            logger.info("Waiting for %d running sweep(s) to finish", len(in_flight))
            _, pending = await asyncio.wait(in_flight, timeout=grace)
            if pending:
                logger.warning("Cancelling %d sweep(s) still running after %.0fs", len(pending), grace)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
