"""
service.py — Enqueue API and status query.

    submit(request)                 → {"status": "queued", "id": job_id}
    submit(request, send_at=future) → {"status": "scheduled", "id", "send_at"}

A send_at that is absent or not in the future enqueues immediately.
Channel values are not checked here: an unsupported channel is accepted
and fails in the worker pool as a fatal attempt, recorded in the log.

Only QueueUnavailableError / StoreUnavailableError (infrastructure) and
ValidationError (bad template, empty fields) reach the caller. Delivery
failures are visible afterwards through `status()` and the log.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional

from backend.app.core.errors import InvalidStateError, NotFoundError, ValidationError
from backend.app.dispatch.job_queue import JobQueue
from backend.app.dispatch.models import (
    BulkSubmitResult,
    Channel,
    JobState,
    LogStatus,
    NotificationJob,
    NotificationRequest,
    NotificationStatus,
    NotificationTemplate,
    RetryPolicy,
    ScheduledNotification,
    ScheduledStatus,
    SubmitResult,
    TERMINAL_LOG_STATUSES,
    TERMINAL_SCHEDULED_STATUSES,
    utcnow,
)
from backend.app.storage.base import NotificationStore

logger = logging.getLogger(__name__)

_QUEUE_STATE_LABELS = {
    JobState.READY: "queued",
    JobState.PROCESSING: "processing",
    JobState.DELAYED: "retrying",
}


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


class NotificationService:

    def __init__(
        self,
        store: NotificationStore,
        queue: JobQueue,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        bulk_max_recipients: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._retry_policy = retry_policy or RetryPolicy()
        self.bulk_max_recipients = bulk_max_recipients
        self._clock = clock

    # ── Submission ──

    async def submit(
        self,
        request: NotificationRequest,
        send_at: Optional[datetime] = None,
    ) -> SubmitResult:
        """Enqueue a notification now, or record it for the scheduler."""
        request = await self._prepare(request)
        send_at = _as_utc(send_at) if send_at else None

        if send_at is not None and send_at > self._clock():
            record = self._scheduled_record(request, request.recipient, send_at)
            await self._store.create_scheduled([record])
            logger.info(
                "Scheduled %s notification %s for %s", request.channel, record.id,
                send_at.isoformat(), extra={"scheduled_id": record.id, "channel": request.channel},
            )
            return SubmitResult(status="scheduled", id=record.id, send_at=send_at)

        job = await self._queue.enqueue(
            self._job(request, request.recipient), self._retry_policy,
        )
        return SubmitResult(status="queued", id=job.job_id)

    async def submit_bulk(
        self,
        recipients: List[str],
        request: NotificationRequest,
        send_at: Optional[datetime] = None,
    ) -> BulkSubmitResult:
        """
        Same message to many recipients, one job (or scheduled record) each.

        `request.recipient` is ignored. Scheduled records are written in a
        single store transaction.
        """
        if not recipients:
            raise ValidationError("At least one recipient is required", field="recipients")
        if len(recipients) > self.bulk_max_recipients:
            raise ValidationError(
                f"At most {self.bulk_max_recipients} recipients per bulk request",
                field="recipients", count=len(recipients),
            )
        request = await self._prepare(request, recipient_required=False)
        send_at = _as_utc(send_at) if send_at else None

        if send_at is not None and send_at > self._clock():
            records = [self._scheduled_record(request, r, send_at) for r in recipients]
            await self._store.create_scheduled(records)
            logger.info(
                "Scheduled %d %s notifications for %s", len(records), request.channel,
                send_at.isoformat(), extra={"recipient_count": len(records)},
            )
            return BulkSubmitResult(status="scheduled", ids=[r.id for r in records], send_at=send_at)

        ids = []
        for recipient in recipients:
            job = await self._queue.enqueue(self._job(request, recipient), self._retry_policy)
            ids.append(job.job_id)
        logger.info(
            "Queued %d %s notifications", len(ids), request.channel,
            extra={"recipient_count": len(ids)},
        )
        return BulkSubmitResult(status="queued", ids=ids)

    async def cancel(self, scheduled_id: str, user_id: Optional[int] = None) -> ScheduledNotification:
        """Cancel a scheduled notification that has not been promoted yet."""
        record = await self._store.get_scheduled(scheduled_id)
        if record is None or (user_id is not None and record.user_id != user_id):
            raise NotFoundError("Scheduled notification", id=scheduled_id)
        cancelled = await self._store.transition_scheduled(
            scheduled_id, (ScheduledStatus.PENDING,), ScheduledStatus.CANCELLED,
        )
        if not cancelled:
            current = await self._store.get_scheduled(scheduled_id)
            status = current.status.value if current else record.status.value
            raise InvalidStateError("scheduled notification", status, "cancel", id=scheduled_id)
        logger.info("Cancelled scheduled notification %s", scheduled_id,
                    extra={"scheduled_id": scheduled_id})
        return await self._store.get_scheduled(scheduled_id)

    # ── Status query ──

    async def status(self, notification_id: str, user_id: Optional[int] = None) -> NotificationStatus:
        """
        Current status of a job or scheduled notification.

        Latest log entry first. A failed entry while the job is still on the
        queue means a retry is pending. Without a log entry, the scheduled
        record answers, then the queue itself.
        """
        log = await self._store.latest_log(notification_id)
        scheduled = await self._store.get_scheduled(notification_id)
        queue_state = await self._queue.state(notification_id)

        owner = log.user_id if log else scheduled.user_id if scheduled else None
        if user_id is not None and owner is not None and owner != user_id:
            raise NotFoundError("Notification", id=notification_id)

        if log is not None:
            in_queue = queue_state is not None
            if log.status == LogStatus.FAILED and in_queue:
                label, terminal = "retrying", False
            else:
                label = log.status.value
                terminal = not in_queue and log.status in TERMINAL_LOG_STATUSES
            return NotificationStatus(
                id=notification_id,
                status=label,
                terminal=terminal,
                recipient=log.recipient,
                channel=log.channel,
                attempt=log.attempt,
                error=log.error,
                send_at=scheduled.send_at if scheduled else None,
                delivered_at=log.delivered_at,
                created_at=log.created_at,
            )

        if scheduled is not None:
            return NotificationStatus(
                id=notification_id,
                status=scheduled.status.value,
                terminal=scheduled.status in TERMINAL_SCHEDULED_STATUSES,
                recipient=scheduled.recipient,
                channel=scheduled.channel,
                send_at=scheduled.send_at,
                created_at=scheduled.created_at,
            )

        if queue_state is not None:
            return NotificationStatus(
                id=notification_id,
                status=_QUEUE_STATE_LABELS[queue_state],
                terminal=False,
            )

        raise NotFoundError("Notification", id=notification_id)

    # ── Internals ──

    async def _prepare(
        self,
        request: NotificationRequest,
        *,
        recipient_required: bool = True,
    ) -> NotificationRequest:
        """Validate fields and apply the template, if any."""
        if recipient_required and not request.recipient:
            raise ValidationError("Recipient is required", field="recipient")

        template: Optional[NotificationTemplate] = None
        if request.template_id is not None:
            template = await self._store.get_template(request.template_id)
            if template is None or not template.is_active:
                raise ValidationError(
                    "Invalid template or template not found",
                    field="template_id", template_id=request.template_id,
                )
            if template.channel != request.channel:
                raise ValidationError(
                    "Template channel mismatch", field="template_id",
                    template_channel=template.channel, channel=request.channel,
                )

        message = request.message or (template.content if template else "")
        if not message:
            raise ValidationError("Message is required", field="message")
        subject = request.subject or (template.subject if template else None)

        return NotificationRequest(
            recipient=request.recipient,
            channel=request.channel,
            message=message,
            subject=subject if request.channel == Channel.EMAIL.value else None,
            template_id=request.template_id,
            campaign_id=request.campaign_id,
            user_id=request.user_id,
            metadata=dict(request.metadata),
        )

    def _job(self, request: NotificationRequest, recipient: str) -> NotificationJob:
        return NotificationJob(
            recipient=recipient,
            channel=request.channel,
            message=request.message,
            subject=request.subject,
            template_id=request.template_id,
            campaign_id=request.campaign_id,
            user_id=request.user_id,
            metadata=dict(request.metadata),
        )

    def _scheduled_record(
        self, request: NotificationRequest, recipient: str, send_at: datetime,
    ) -> ScheduledNotification:
        return ScheduledNotification(
            recipient=recipient,
            channel=request.channel,
            message=request.message,
            send_at=send_at,
            subject=request.subject,
            template_id=request.template_id,
            campaign_id=request.campaign_id,
            user_id=request.user_id,
            metadata=dict(request.metadata),
        )
