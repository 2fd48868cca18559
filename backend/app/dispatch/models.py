"""
models.py — Shared data structures for the dispatch engine.

Defines:
    • Channel                 — delivery channel enum
    • ScheduledStatus         — scheduled notification state machine
    • LogStatus               — delivery log entry outcome
    • CampaignStatus          — campaign lifecycle
    • RetryPolicy             — exponential backoff parameters
    • NotificationJob         — transient unit of work on the job queue
    • DeliveryOutcome         — explicit result of one delivery attempt
    • ScheduledNotification, DeliveryLogEntry, Campaign, NotificationTemplate
                              — records held by the persistent store

═══════════════════════════════════════════════════════════════════════════
STATE MACHINES
═══════════════════════════════════════════════════════════════════════════

Scheduled notification:

    pending ──► queued ──► sent
       │          │
       │          └──────► failed
       └──► cancelled

    Transitions never regress. pending→queued is the scheduler's claim;
    queued→failed also covers a claim whose enqueue failed.

Campaign:

    draft ─────┐
               ├──► running ──► completed   (scheduler only)
    scheduled ─┘      ▲  │
                      │  ▼
                      paused

═══════════════════════════════════════════════════════════════════════════
RETRY POLICY
═══════════════════════════════════════════════════════════════════════════

    delay before attempt n+1 = base × 2^(n − 1)

    Default (3 attempts, base 10s):
        Attempt 1 fails → retry in 10s
        Attempt 2 fails → retry in 20s
        Attempt 3 fails → dropped (terminal failure)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class Channel(str, Enum):
    """Supported delivery channels."""
    EMAIL  = "email"
    SMS    = "sms"
    IN_APP = "in-app"


class ScheduledStatus(str, Enum):
    PENDING   = "pending"
    QUEUED    = "queued"
    SENT      = "sent"
    FAILED    = "failed"
    CANCELLED = "cancelled"


class LogStatus(str, Enum):
    SUCCESS = "success"
    FAILED  = "failed"
    PENDING = "pending"


class CampaignStatus(str, Enum):
    DRAFT     = "draft"
    SCHEDULED = "scheduled"
    RUNNING   = "running"
    COMPLETED = "completed"
    PAUSED    = "paused"


class OutcomeKind(str, Enum):
    DELIVERED = "delivered"
    RETRYABLE = "retryable"
    FATAL     = "fatal"


class SettleAction(str, Enum):
    """What the job queue does with a job after an attempt."""
    ACK   = "ack"     # terminal success
    RETRY = "retry"   # re-deliver after backoff
    DROP  = "drop"    # terminal failure


class JobState(str, Enum):
    READY      = "ready"
    DELAYED    = "delayed"
    PROCESSING = "processing"


TERMINAL_SCHEDULED_STATUSES = (
    ScheduledStatus.SENT,
    ScheduledStatus.FAILED,
    ScheduledStatus.CANCELLED,
)
OUTSTANDING_SCHEDULED_STATUSES = (ScheduledStatus.PENDING, ScheduledStatus.QUEUED)
TERMINAL_LOG_STATUSES = (LogStatus.SUCCESS, LogStatus.FAILED)


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Job Queue Types
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""
    max_attempts: int = 3
    backoff_base_seconds: float = 10.0

    def delay_after(self, attempt: int) -> float:
        """Delay before the attempt following `attempt` (1-based)."""
        return self.backoff_base_seconds * (2 ** (attempt - 1))

    def allows_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "backoff_base_seconds": self.backoff_base_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            backoff_base_seconds=float(data.get("backoff_base_seconds", 10.0)),
        )


@dataclass
class NotificationJob:
    """
    A single enqueued delivery task for one recipient.

    `channel` is kept as a plain string: an unsupported value must reach
    the worker pool and fail there as a fatal attempt, not at construction.
    """
    recipient: str
    channel: str
    message: str
    job_id: str = field(default_factory=new_id)
    subject: Optional[str] = None
    template_id: Optional[int] = None
    campaign_id: Optional[int] = None
    scheduled_id: Optional[str] = None
    user_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    enqueued_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "recipient": self.recipient,
            "channel": self.channel,
            "message": self.message,
            "subject": self.subject,
            "template_id": self.template_id,
            "campaign_id": self.campaign_id,
            "scheduled_id": self.scheduled_id,
            "user_id": self.user_id,
            "metadata": self.metadata,
            "attempts": self.attempts,
            "retry_policy": self.retry_policy.to_dict(),
            "enqueued_at": _iso(self.enqueued_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NotificationJob":
        return cls(
            job_id=data["job_id"],
            recipient=data["recipient"],
            channel=data["channel"],
            message=data["message"],
            subject=data.get("subject"),
            template_id=data.get("template_id"),
            campaign_id=data.get("campaign_id"),
            scheduled_id=data.get("scheduled_id"),
            user_id=data.get("user_id"),
            metadata=dict(data.get("metadata") or {}),
            attempts=int(data.get("attempts", 0)),
            retry_policy=RetryPolicy.from_dict(data.get("retry_policy") or {}),
            enqueued_at=_parse_dt(data.get("enqueued_at")),
        )


@dataclass(frozen=True)
class DeliveryOutcome:
    """
    Result of one delivery attempt.

    Returned by the worker's delivery step instead of raising, so the job
    queue can decide between acknowledge, requeue and drop.
    """
    kind: OutcomeKind
    error: Optional[str] = None
    delivered_at: Optional[datetime] = None

    @classmethod
    def delivered(cls, at: Optional[datetime] = None) -> "DeliveryOutcome":
        return cls(OutcomeKind.DELIVERED, delivered_at=at or utcnow())

    @classmethod
    def retryable(cls, error: str) -> "DeliveryOutcome":
        return cls(OutcomeKind.RETRYABLE, error=error)

    @classmethod
    def fatal(cls, error: str) -> "DeliveryOutcome":
        return cls(OutcomeKind.FATAL, error=error)

    @property
    def ok(self) -> bool:
        return self.kind == OutcomeKind.DELIVERED

    @property
    def log_status(self) -> LogStatus:
        return LogStatus.SUCCESS if self.ok else LogStatus.FAILED


# ═══════════════════════════════════════════════════════════════════════════
# Store Records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ScheduledNotification:
    """Durable record of a delivery intended for a future time."""
    recipient: str
    channel: str
    message: str
    send_at: datetime
    id: str = field(default_factory=new_id)
    status: ScheduledStatus = ScheduledStatus.PENDING
    subject: Optional[str] = None
    template_id: Optional[int] = None
    campaign_id: Optional[int] = None
    user_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_job(self, retry_policy: RetryPolicy) -> NotificationJob:
        """The job a promotion enqueues. Reuses this record's id as job id."""
        return NotificationJob(
            job_id=self.id,
            recipient=self.recipient,
            channel=self.channel,
            message=self.message,
            subject=self.subject,
            template_id=self.template_id,
            campaign_id=self.campaign_id,
            scheduled_id=self.id,
            user_id=self.user_id,
            metadata=dict(self.metadata),
            retry_policy=retry_policy,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "recipient": self.recipient,
            "channel": self.channel,
            "status": self.status.value,
            "send_at": self.send_at.isoformat(),
            "subject": self.subject,
            "template_id": self.template_id,
            "campaign_id": self.campaign_id,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class DeliveryLogEntry:
    """Immutable record of one delivery attempt's outcome."""
    job_id: str
    recipient: str
    channel: str
    message: str
    status: LogStatus
    attempt: int
    id: Optional[int] = None
    subject: Optional[str] = None
    template_id: Optional[int] = None
    campaign_id: Optional[int] = None
    user_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "recipient": self.recipient,
            "channel": self.channel,
            "status": self.status.value,
            "attempt": self.attempt,
            "error": self.error,
            "campaign_id": self.campaign_id,
            "delivered_at": _iso(self.delivered_at),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class NotificationTemplate:
    name: str
    channel: str
    content: str
    id: Optional[int] = None
    subject: Optional[str] = None
    user_id: Optional[int] = None
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "channel": self.channel,
            "subject": self.subject,
            "content": self.content,
            "is_active": self.is_active,
        }


@dataclass
class Campaign:
    """A bulk-send unit tracked as an aggregate."""
    name: str
    channel: str
    recipients: List[str]
    id: Optional[int] = None
    user_id: Optional[int] = None
    description: Optional[str] = None
    template_id: Optional[int] = None
    status: CampaignStatus = CampaignStatus.DRAFT
    total_recipients: int = 0
    success_count: int = 0
    failure_count: int = 0
    dispatched_count: int = 0
    scheduled_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def settled_count(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        if self.settled_count == 0:
            return 0.0
        return self.success_count / self.settled_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "channel": self.channel,
            "template_id": self.template_id,
            "status": self.status.value,
            "total_recipients": self.total_recipients,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "dispatched_count": self.dispatched_count,
            "success_rate": f"{self.success_rate:.1%}",
            "scheduled_at": _iso(self.scheduled_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "created_at": self.created_at.isoformat(),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Enqueue API Results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class NotificationRequest:
    """What a caller asks the engine to deliver."""
    recipient: str
    channel: str
    message: str
    subject: Optional[str] = None
    template_id: Optional[int] = None
    campaign_id: Optional[int] = None
    user_id: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubmitResult:
    status: str  # "queued" | "scheduled"
    id: str
    send_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status, "id": self.id}
        if self.send_at:
            d["send_at"] = self.send_at.isoformat()
        return d


@dataclass
class BulkSubmitResult:
    status: str
    ids: List[str]
    send_at: Optional[datetime] = None

    @property
    def count(self) -> int:
        return len(self.ids)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status, "count": self.count, "ids": self.ids}
        if self.send_at:
            d["send_at"] = self.send_at.isoformat()
        return d


@dataclass
class NotificationStatus:
    """Current terminal or in-flight status of a job / scheduled notification."""
    id: str
    status: str
    terminal: bool
    recipient: Optional[str] = None
    channel: Optional[str] = None
    attempt: Optional[int] = None
    error: Optional[str] = None
    send_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "terminal": self.terminal,
            "recipient": self.recipient,
            "channel": self.channel,
            "attempt": self.attempt,
            "error": self.error,
            "send_at": _iso(self.send_at),
            "delivered_at": _iso(self.delivered_at),
            "created_at": _iso(self.created_at),
        }
