"""
worker.py — Worker pool: take jobs off the queue and deliver them.

═══════════════════════════════════════════════════════════════════════════
PER-JOB PIPELINE
═══════════════════════════════════════════════════════════════════════════

    dequeue ──► resolve sender ──► deliver ──► DeliveryOutcome
                                                   │
        ┌──────────────────────────────────────────┘
        ▼
    append one log entry (attempt = prior attempts + 1)
        │
        ▼
    queue.decide ──► ACK / DROP (terminal)         RETRY
                       │                             │
                       ├─ campaign counter +1        │
                       ├─ scheduled → sent | failed  │
                       ▼                             ▼
                    queue.settle ◄───────────────────┘

Error classes:
    UnknownChannelError  → fatal, dropped at attempt 1
    DeliveryError        → retryable while attempts remain
    any other sender     → retryable (logged with traceback)
    log write failure    → reported via on_log_failure, outcome unchanged

`concurrency` tasks run per process; each holds at most one job.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from backend.app.core.errors import (
    DeliveryError,
    LoggingError,
    QueueUnavailableError,
    StoreUnavailableError,
    UnknownChannelError,
)
from backend.app.core.logging_config import set_log_context
from backend.app.dispatch.channels.base import ChannelRegistry
from backend.app.dispatch.job_queue import JobQueue
from backend.app.dispatch.models import (
    Channel,
    DeliveryLogEntry,
    DeliveryOutcome,
    NotificationJob,
    ScheduledStatus,
    SettleAction,
)
from backend.app.storage.base import NotificationStore

logger = logging.getLogger(__name__)

# Pause after the queue backend fails before polling again
QUEUE_ERROR_BACKOFF_SECONDS = 1.0


def _report_log_failure(error: LoggingError) -> None:
    logger.error(error.message, extra={"job_id": error.job_id, "attempt": error.attempt})


class WorkerPool:
    """
    Fixed-size pool of asyncio worker tasks sharing one job queue.

    Usage:
        pool = WorkerPool(queue, store, channels, concurrency=5)
        await pool.start()
        ...
        await pool.stop(grace=30)
    """

    def __init__(
        self,
        queue: JobQueue,
        store: NotificationStore,
        channels: ChannelRegistry,
        *,
        concurrency: int = 5,
        dequeue_timeout: float = 1.0,
        on_log_failure: Optional[Callable[[LoggingError], None]] = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._store = store
        self._channels = channels
        self.concurrency = concurrency
        self._dequeue_timeout = dequeue_timeout
        self._on_log_failure = on_log_failure or _report_log_failure
        self._tasks: List[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    # ── Lifecycle ──

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"dispatch-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Worker pool started with %d workers", self.concurrency)

    async def stop(self, grace: float = 30.0) -> None:
        """Let in-flight jobs finish within `grace` seconds, then cancel."""
        if not self._tasks:
            return
        self._stopping.set()
        _, pending = await asyncio.wait(self._tasks, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Cancelled %d worker(s) after %.0fs grace", len(pending), grace)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _run(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                await self.process_next(self._dequeue_timeout)
            except QueueUnavailableError as exc:
                logger.error("Worker %d: %s", index, exc.message)
                await asyncio.sleep(QUEUE_ERROR_BACKOFF_SECONDS)
            except Exception:
                logger.exception("Worker %d: unexpected error", index)
            finally:
                set_log_context()

    # ── Job processing ──

    async def process_next(self, timeout: Optional[float] = None) -> Optional[DeliveryOutcome]:
        """Dequeue and process one job. None when the queue stayed empty."""
        job = await self._queue.dequeue(timeout)
        if job is None:
            return None
        return await self.process(job)

    async def process(self, job: NotificationJob) -> DeliveryOutcome:
        job.attempts += 1
        set_log_context(job_id=job.job_id, channel=job.channel, attempt=job.attempts)
        started = time.perf_counter()

        outcome = await self._deliver(job)
        await self._record_log(job, outcome)

        action = self._queue.decide(job, outcome)
        if action != SettleAction.RETRY:
            await self._finalize(job, outcome)
        await self._queue.settle(job, action)

        duration_ms = round((time.perf_counter() - started) * 1000, 1)
        if outcome.ok:
            logger.info(
                "Delivered %s to %s", job.channel, job.recipient,
                extra={"job_id": job.job_id, "attempt": job.attempts, "duration_ms": duration_ms},
            )
        else:
            logger.warning(
                "Attempt %d of job %s failed (%s): %s",
                job.attempts, job.job_id, action.value, outcome.error,
                extra={"job_id": job.job_id, "attempt": job.attempts, "duration_ms": duration_ms},
            )
        return outcome

    async def _deliver(self, job: NotificationJob) -> DeliveryOutcome:
        try:
            sender = self._channels.resolve(job.channel)
        except UnknownChannelError as exc:
            return DeliveryOutcome.fatal(exc.message)

        subject = job.subject if job.channel == Channel.EMAIL.value else None
        try:
            await sender.deliver(job.recipient, job.message, subject)
        except DeliveryError as exc:
            return DeliveryOutcome.retryable(exc.message)
        except Exception as exc:
            logger.exception("Sender for %s raised unexpectedly", job.channel)
            return DeliveryOutcome.retryable(f"{type(exc).__name__}: {exc}")
        return DeliveryOutcome.delivered()

    async def _record_log(self, job: NotificationJob, outcome: DeliveryOutcome) -> None:
        entry = DeliveryLogEntry(
            job_id=job.job_id,
            recipient=job.recipient,
            channel=job.channel,
            message=job.message,
            subject=job.subject,
            template_id=job.template_id,
            campaign_id=job.campaign_id,
            user_id=job.user_id,
            metadata=dict(job.metadata),
            status=outcome.log_status,
            error=outcome.error,
            attempt=job.attempts,
            delivered_at=outcome.delivered_at,
        )
        try:
            await self._store.append_log(entry)
        except Exception as exc:
            self._on_log_failure(LoggingError(job.job_id, job.attempts, str(exc)))

    async def _finalize(self, job: NotificationJob, outcome: DeliveryOutcome) -> None:
        """Bookkeeping for a job that will not be attempted again."""
        if job.campaign_id is not None:
            try:
                applied = await self._store.increment_campaign_counter(job.campaign_id, outcome.ok)
            except StoreUnavailableError as exc:
                logger.error(
                    "Campaign %s counter not updated for job %s: %s",
                    job.campaign_id, job.job_id, exc.message,
                    extra={"campaign_id": job.campaign_id, "job_id": job.job_id},
                )
            else:
                if not applied:
                    logger.warning(
                        "Campaign %s already fully settled; ignoring job %s",
                        job.campaign_id, job.job_id,
                        extra={"campaign_id": job.campaign_id},
                    )

        if job.scheduled_id is not None:
            final = ScheduledStatus.SENT if outcome.ok else ScheduledStatus.FAILED
            try:
                await self._store.transition_scheduled(
                    job.scheduled_id, (ScheduledStatus.QUEUED,), final,
                )
            except StoreUnavailableError as exc:
                logger.error(
                    "Scheduled notification %s not marked %s: %s",
                    job.scheduled_id, final.value, exc.message,
                    extra={"scheduled_id": job.scheduled_id},
                )
