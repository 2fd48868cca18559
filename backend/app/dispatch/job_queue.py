"""
job_queue.py — Durable job queue with bounded retry and exponential backoff.

═══════════════════════════════════════════════════════════════════════════
JOB LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    enqueue ──► READY ──dequeue──► PROCESSING ──settle(ACK)──► (removed)
                  ▲                    │
                  │                    ├──settle(DROP)──► (removed)
                  │                    │
                  └──── DELAYED ◄──────┘ settle(RETRY), after
                                         base × 2^(attempt − 1)

A dequeued job is leased to exactly one consumer. The Redis queue gives
every lease a visibility timeout; a lease that expires (consumer died
mid-job) puts the job back on the ready list, so delivery is
at-least-once across process restarts.

The retry decision is separate from its execution:

    outcome = await worker.deliver(job)        # DeliveryOutcome
    action  = queue.decide(job, outcome)       # ACK | RETRY | DROP
    ... terminal bookkeeping ...
    await queue.settle(job, action)

═══════════════════════════════════════════════════════════════════════════
REDIS LAYOUT  (prefix dispatch:{name})
═══════════════════════════════════════════════════════════════════════════

    :jobs         hash   job_id → job JSON
    :states       hash   job_id → ready | delayed | processing
    :ready        list   FIFO of ready job ids
    :delayed      zset   job_id scored by ready-at (unix seconds)
    :processing   list   job ids handed to a consumer
    :leases       zset   job_id scored by lease expiry (unix seconds)
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import json
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Iterator, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from backend.app.core.errors import QueueUnavailableError
from backend.app.core.redis_client import ping_redis
from backend.app.dispatch.models import (
    DeliveryOutcome,
    JobState,
    NotificationJob,
    OutcomeKind,
    RetryPolicy,
    SettleAction,
    utcnow,
)

logger = logging.getLogger(__name__)


class JobQueue(ABC):
    """Contract shared by the Redis and in-memory queues."""

    def __init__(self, default_policy: Optional[RetryPolicy] = None) -> None:
        self.default_policy = default_policy or RetryPolicy()

    # ── Producer side ──

    async def enqueue(
        self,
        job: NotificationJob,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> NotificationJob:
        """
        Persist a job and make it ready for a worker.

        Raises:
            QueueUnavailableError: the queue backend could not accept the job.
        """
        job.retry_policy = retry_policy or self.default_policy
        job.enqueued_at = utcnow()
        await self._push(job)
        logger.debug(
            "Enqueued job %s (%s)", job.job_id, job.channel,
            extra={"job_id": job.job_id, "channel": job.channel},
        )
        return job

    # ── Consumer side ──

    @abstractmethod
    async def dequeue(self, timeout: Optional[float] = None) -> Optional[NotificationJob]:
        """Lease the next ready job. None when nothing arrived within timeout."""

    def decide(self, job: NotificationJob, outcome: DeliveryOutcome) -> SettleAction:
        """
        Pure retry decision for a job whose attempt just finished.

        `job.attempts` must already count the attempt that produced
        `outcome`.
        """
        if outcome.kind == OutcomeKind.DELIVERED:
            return SettleAction.ACK
        if outcome.kind == OutcomeKind.FATAL:
            return SettleAction.DROP
        if job.retry_policy.allows_retry(job.attempts):
            return SettleAction.RETRY
        return SettleAction.DROP

    async def settle(self, job: NotificationJob, action: SettleAction) -> None:
        """Carry out a decision: remove the job, or re-schedule it after backoff."""
        if action == SettleAction.RETRY:
            delay = job.retry_policy.delay_after(job.attempts)
            await self._requeue(job, delay)
            logger.info(
                "Job %s will retry in %.1fs (attempt %d/%d)",
                job.job_id, delay, job.attempts, job.retry_policy.max_attempts,
                extra={"job_id": job.job_id, "attempt": job.attempts},
            )
        else:
            await self._remove(job.job_id)
            logger.debug("Job %s settled: %s", job.job_id, action.value)

    # ── Introspection ──

    @abstractmethod
    async def state(self, job_id: str) -> Optional[JobState]:
        """Where the job currently is, or None once it has left the queue."""

    @abstractmethod
    async def size(self) -> int:
        """Jobs held in any state."""

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None

    # ── Backend primitives ──

    @abstractmethod
    async def _push(self, job: NotificationJob) -> None: ...

    @abstractmethod
    async def _requeue(self, job: NotificationJob, delay: float) -> None: ...

    @abstractmethod
    async def _remove(self, job_id: str) -> None: ...


# ═══════════════════════════════════════════════════════════════════════════
# In-memory queue (development / tests)
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryJobQueue(JobQueue):
    """
    Non-durable queue for a single process.

    Consumers wait on an asyncio.Condition; delayed jobs sit in a heap
    keyed by ready-at and move to the ready deque once due.
    """

    def __init__(
        self,
        default_policy: Optional[RetryPolicy] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(default_policy)
        self._clock = clock
        self._cond = asyncio.Condition()
        self._jobs: Dict[str, Dict] = {}
        self._states: Dict[str, JobState] = {}
        self._ready: Deque[str] = deque()
        self._delayed: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()

    async def _push(self, job: NotificationJob) -> None:
        async with self._cond:
            self._jobs[job.job_id] = job.to_dict()
            self._states[job.job_id] = JobState.READY
            self._ready.append(job.job_id)
            self._cond.notify()

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            if self._states.get(job_id) == JobState.DELAYED:
                self._states[job_id] = JobState.READY
                self._ready.append(job_id)

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[NotificationJob]:
        deadline = None if timeout is None else self._clock() + timeout
        async with self._cond:
            while True:
                self._promote_due()
                if self._ready:
                    job_id = self._ready.popleft()
                    self._states[job_id] = JobState.PROCESSING
                    return NotificationJob.from_dict(self._jobs[job_id])

                now = self._clock()
                wait: Optional[float] = None
                if self._delayed:
                    wait = max(0.0, self._delayed[0][0] - now)
                if deadline is not None:
                    remaining = deadline - now
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                try:
                    await asyncio.wait_for(self._cond.wait(), wait)
                except asyncio.TimeoutError:
                    pass

    async def _requeue(self, job: NotificationJob, delay: float) -> None:
        async with self._cond:
            self._jobs[job.job_id] = job.to_dict()
            if delay <= 0:
                self._states[job.job_id] = JobState.READY
                self._ready.append(job.job_id)
            else:
                self._states[job.job_id] = JobState.DELAYED
                heapq.heappush(
                    self._delayed, (self._clock() + delay, next(self._seq), job.job_id),
                )
            self._cond.notify_all()

    async def _remove(self, job_id: str) -> None:
        async with self._cond:
            self._jobs.pop(job_id, None)
            self._states.pop(job_id, None)

    async def state(self, job_id: str) -> Optional[JobState]:
        return self._states.get(job_id)

    async def size(self) -> int:
        return len(self._jobs)

    async def ping(self) -> bool:
        return True


# ═══════════════════════════════════════════════════════════════════════════
# Redis queue (production)
# ═══════════════════════════════════════════════════════════════════════════

@contextmanager
def _redis_faults(**details) -> Iterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.error("Job queue backend error: %s", exc)
        raise QueueUnavailableError(str(exc), **details) from exc


class RedisJobQueue(JobQueue):
    """
    Durable queue on Redis, shared by every worker process.

    Consumers poll: each poll promotes due delayed jobs, returns expired
    leases to the ready list, then claims one id with LMOVE. ZREM is the
    claim on delayed and leased ids, so two consumers never move the same
    id twice.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        name: str = "notifications",
        *,
        default_policy: Optional[RetryPolicy] = None,
        poll_interval: float = 0.5,
        visibility_timeout: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(default_policy)
        self._redis = client
        self._poll_interval = poll_interval
        self._visibility_timeout = visibility_timeout
        self._clock = clock

        prefix = f"dispatch:{name}"
        self._jobs_key = f"{prefix}:jobs"
        self._states_key = f"{prefix}:states"
        self._ready_key = f"{prefix}:ready"
        self._delayed_key = f"{prefix}:delayed"
        self._processing_key = f"{prefix}:processing"
        self._leases_key = f"{prefix}:leases"

    async def _push(self, job: NotificationJob) -> None:
        with _redis_faults(job_id=job.job_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._jobs_key, job.job_id, json.dumps(job.to_dict()))
                pipe.hset(self._states_key, job.job_id, JobState.READY.value)
                pipe.rpush(self._ready_key, job.job_id)
                await pipe.execute()

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[NotificationJob]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with _redis_faults():
                job = await self._claim_next()
            if job is not None:
                return job
            if deadline is None:
                await asyncio.sleep(self._poll_interval)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self._poll_interval, remaining))

    async def _claim_next(self) -> Optional[NotificationJob]:
        now = self._clock()
        await self._promote_delayed(now)
        await self._requeue_expired(now)

        while True:
            job_id = await self._redis.lmove(
                self._ready_key, self._processing_key, "LEFT", "RIGHT",
            )
            if job_id is None:
                return None
            raw = await self._redis.hget(self._jobs_key, job_id)
            if raw is None:
                # Settled by a consumer whose lease had expired
                await self._redis.lrem(self._processing_key, 1, job_id)
                continue
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self._leases_key, {job_id: now + self._visibility_timeout})
                pipe.hset(self._states_key, job_id, JobState.PROCESSING.value)
                await pipe.execute()
            return NotificationJob.from_dict(json.loads(raw))

    async def _promote_delayed(self, now: float) -> None:
        due = await self._redis.zrangebyscore(self._delayed_key, "-inf", now)
        for job_id in due:
            if not await self._redis.zrem(self._delayed_key, job_id):
                continue
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._states_key, job_id, JobState.READY.value)
                pipe.rpush(self._ready_key, job_id)
                await pipe.execute()

    async def _requeue_expired(self, now: float) -> None:
        processing = await self._redis.lrange(self._processing_key, 0, -1)
        if processing:
            # Ids moved by a consumer that died before writing its lease
            await self._redis.zadd(
                self._leases_key,
                {job_id: now + self._visibility_timeout for job_id in processing},
                nx=True,
            )
        expired = await self._redis.zrangebyscore(self._leases_key, "-inf", now)
        for job_id in expired:
            if not await self._redis.zrem(self._leases_key, job_id):
                continue
            logger.warning("Lease expired for job %s; redelivering", job_id,
                           extra={"job_id": job_id})
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._processing_key, 1, job_id)
                pipe.hset(self._states_key, job_id, JobState.READY.value)
                pipe.rpush(self._ready_key, job_id)
                await pipe.execute()

    async def _requeue(self, job: NotificationJob, delay: float) -> None:
        with _redis_faults(job_id=job.job_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.hset(self._jobs_key, job.job_id, json.dumps(job.to_dict()))
                pipe.hset(self._states_key, job.job_id, JobState.DELAYED.value)
                pipe.lrem(self._processing_key, 1, job.job_id)
                pipe.zrem(self._leases_key, job.job_id)
                pipe.zadd(self._delayed_key, {job.job_id: self._clock() + delay})
                await pipe.execute()

    async def _remove(self, job_id: str) -> None:
        with _redis_faults(job_id=job_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self._processing_key, 1, job_id)
                pipe.zrem(self._leases_key, job_id)
                pipe.hdel(self._jobs_key, job_id)
                pipe.hdel(self._states_key, job_id)
                await pipe.execute()

    async def state(self, job_id: str) -> Optional[JobState]:
        with _redis_faults(job_id=job_id):
            raw = await self._redis.hget(self._states_key, job_id)
        return JobState(raw) if raw else None

    async def size(self) -> int:
        with _redis_faults():
            return int(await self._redis.hlen(self._jobs_key))

    async def ping(self) -> bool:
        return await ping_redis(self._redis)
