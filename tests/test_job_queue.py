"""
test_job_queue.py — Tests for the in-memory and Redis job queues.

Covers:
    • Enqueue / dequeue, FIFO order and job state tracking
    • Retry decision (ack, requeue with backoff, drop at the ceiling)
    • Backoff timing against an injected clock
    • Exclusive leases across concurrent consumers
    • Redis lease expiry and redelivery
    • Redis outage → QueueUnavailableError

Redis tests run against fakeredis; no server is needed.

Run with:
    pytest tests/test_job_queue.py -v
"""

from __future__ import annotations

import asyncio

import fakeredis
import pytest

from backend.app.core.errors import QueueUnavailableError
from backend.app.dispatch.job_queue import InMemoryJobQueue, RedisJobQueue
from backend.app.dispatch.models import (
    DeliveryOutcome,
    JobState,
    NotificationJob,
    RetryPolicy,
    SettleAction,
)


class FakeClock:
    """Manually advanced clock for backoff and lease timing."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _make_job(recipient: str = "a@x.com", channel: str = "email") -> NotificationJob:
    return NotificationJob(recipient=recipient, channel=channel, message="hi")


def _make_redis_queue(client=None, clock=None, **kwargs) -> RedisJobQueue:
    return RedisJobQueue(
        client or fakeredis.FakeAsyncRedis(decode_responses=True),
        "test",
        default_policy=kwargs.pop("default_policy", RetryPolicy()),
        poll_interval=0.01,
        clock=clock or FakeClock(),
        **kwargs,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Retry Decision
# ═══════════════════════════════════════════════════════════════════════════

class TestDecide:

    def _decide(self, attempts: int, outcome: DeliveryOutcome) -> SettleAction:
        queue = InMemoryJobQueue(RetryPolicy())
        job = _make_job()
        job.attempts = attempts
        return queue.decide(job, outcome)

    def test_delivered_is_acknowledged(self):
        assert self._decide(1, DeliveryOutcome.delivered()) == SettleAction.ACK

    def test_fatal_is_dropped_on_first_attempt(self):
        assert self._decide(1, DeliveryOutcome.fatal("Unknown channel: fax")) == SettleAction.DROP

    def test_retryable_requeued_while_attempts_remain(self):
        assert self._decide(1, DeliveryOutcome.retryable("boom")) == SettleAction.RETRY
        assert self._decide(2, DeliveryOutcome.retryable("boom")) == SettleAction.RETRY

    def test_retryable_dropped_at_ceiling(self):
        assert self._decide(3, DeliveryOutcome.retryable("boom")) == SettleAction.DROP


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: In-Memory Queue
# ═══════════════════════════════════════════════════════════════════════════

class TestInMemoryJobQueue:

    @pytest.mark.asyncio
    async def test_enqueue_assigns_policy_and_timestamp(self):
        policy = RetryPolicy(3, 10.0)
        queue = InMemoryJobQueue()
        job = await queue.enqueue(_make_job(), policy)
        assert job.retry_policy == policy
        assert job.enqueued_at is not None
        assert await queue.state(job.job_id) == JobState.READY

    @pytest.mark.asyncio
    async def test_dequeue_leases_job(self):
        queue = InMemoryJobQueue()
        job = await queue.enqueue(_make_job())

        leased = await queue.dequeue(timeout=0.1)

        assert leased.job_id == job.job_id
        assert await queue.state(job.job_id) == JobState.PROCESSING

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        queue = InMemoryJobQueue()
        ids = [(await queue.enqueue(_make_job(f"u{i}@x.com"))).job_id for i in range(3)]
        got = [(await queue.dequeue(timeout=0.1)).job_id for _ in range(3)]
        assert got == ids

    @pytest.mark.asyncio
    async def test_empty_dequeue_times_out(self):
        queue = InMemoryJobQueue()
        assert await queue.dequeue(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_waiting_consumer_woken_by_enqueue(self):
        queue = InMemoryJobQueue()
        waiter = asyncio.create_task(queue.dequeue())
        await asyncio.sleep(0)
        job = await queue.enqueue(_make_job())

        leased = await asyncio.wait_for(waiter, timeout=1.0)

        assert leased.job_id == job.job_id

    @pytest.mark.asyncio
    async def test_ack_removes_job(self):
        queue = InMemoryJobQueue()
        await queue.enqueue(_make_job())
        job = await queue.dequeue(timeout=0.1)
        job.attempts = 1

        await queue.settle(job, SettleAction.ACK)

        assert await queue.state(job.job_id) is None
        assert await queue.size() == 0

    @pytest.mark.asyncio
    async def test_retry_waits_for_backoff(self):
        clock = FakeClock()
        queue = InMemoryJobQueue(RetryPolicy(3, 10.0), clock=clock)
        await queue.enqueue(_make_job())
        job = await queue.dequeue(timeout=0)
        job.attempts = 1

        await queue.settle(job, SettleAction.RETRY)

        assert await queue.state(job.job_id) == JobState.DELAYED
        clock.advance(9.9)
        assert await queue.dequeue(timeout=0) is None
        clock.advance(0.1)
        again = await queue.dequeue(timeout=0)
        assert again.job_id == job.job_id
        assert again.attempts == 1

    @pytest.mark.asyncio
    async def test_second_retry_doubles_delay(self):
        clock = FakeClock()
        queue = InMemoryJobQueue(RetryPolicy(3, 10.0), clock=clock)
        await queue.enqueue(_make_job())
        job = await queue.dequeue(timeout=0)
        job.attempts = 2

        await queue.settle(job, SettleAction.RETRY)

        clock.advance(19.0)
        assert await queue.dequeue(timeout=0) is None
        clock.advance(1.0)
        assert (await queue.dequeue(timeout=0)).job_id == job.job_id

    @pytest.mark.asyncio
    async def test_concurrent_consumers_get_distinct_jobs(self):
        queue = InMemoryJobQueue()
        for i in range(10):
            await queue.enqueue(_make_job(f"u{i}@x.com"))

        leased = await asyncio.gather(*(queue.dequeue(timeout=0.5) for _ in range(10)))

        ids = [job.job_id for job in leased]
        assert len(set(ids)) == 10


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Redis Queue
# ═══════════════════════════════════════════════════════════════════════════

class TestRedisJobQueue:

    @pytest.mark.asyncio
    async def test_enqueue_and_dequeue(self):
        queue = _make_redis_queue()
        job = await queue.enqueue(_make_job(channel="sms"))
        assert await queue.state(job.job_id) == JobState.READY
        assert await queue.size() == 1

        leased = await queue.dequeue(timeout=0.1)

        assert leased.job_id == job.job_id
        assert leased.channel == "sms"
        assert leased.retry_policy == RetryPolicy()
        assert await queue.state(job.job_id) == JobState.PROCESSING

    @pytest.mark.asyncio
    async def test_empty_dequeue_times_out(self):
        queue = _make_redis_queue()
        assert await queue.dequeue(timeout=0.05) is None

    @pytest.mark.asyncio
    async def test_ack_clears_every_key(self):
        client = fakeredis.FakeAsyncRedis(decode_responses=True)
        queue = _make_redis_queue(client)
        await queue.enqueue(_make_job())
        job = await queue.dequeue(timeout=0.1)
        job.attempts = 1

        await queue.settle(job, SettleAction.ACK)

        assert await queue.size() == 0
        assert await queue.state(job.job_id) is None
        assert await client.llen("dispatch:test:processing") == 0
        assert await client.zcard("dispatch:test:leases") == 0

    @pytest.mark.asyncio
    async def test_retry_persists_attempt_count_and_waits(self):
        clock = FakeClock()
        queue = _make_redis_queue(clock=clock)
        await queue.enqueue(_make_job())
        job = await queue.dequeue(timeout=0)
        job.attempts = 1

        await queue.settle(job, SettleAction.RETRY)

        assert await queue.state(job.job_id) == JobState.DELAYED
        assert await queue.dequeue(timeout=0) is None
        clock.advance(10.0)
        again = await queue.dequeue(timeout=0)
        assert again.job_id == job.job_id
        assert again.attempts == 1

    @pytest.mark.asyncio
    async def test_expired_lease_is_redelivered(self):
        clock = FakeClock()
        queue = _make_redis_queue(clock=clock, visibility_timeout=30.0)
        job = await queue.enqueue(_make_job())
        assert (await queue.dequeue(timeout=0)).job_id == job.job_id

        assert await queue.dequeue(timeout=0) is None
        clock.advance(31.0)
        redelivered = await queue.dequeue(timeout=0)

        assert redelivered.job_id == job.job_id
        assert await queue.size() == 1

    @pytest.mark.asyncio
    async def test_two_processes_never_share_a_job(self):
        client = fakeredis.FakeAsyncRedis(decode_responses=True)
        first = _make_redis_queue(client)
        second = _make_redis_queue(client)
        for i in range(6):
            await first.enqueue(_make_job(f"u{i}@x.com"))

        leased = await asyncio.gather(*(
            (first if i % 2 else second).dequeue(timeout=0.5) for i in range(6)
        ))

        assert len({job.job_id for job in leased}) == 6
        assert await first.dequeue(timeout=0) is None

    @pytest.mark.asyncio
    async def test_outage_raises_queue_unavailable(self):
        server = fakeredis.FakeServer()
        queue = _make_redis_queue(fakeredis.FakeAsyncRedis(server=server, decode_responses=True))
        server.connected = False

        with pytest.raises(QueueUnavailableError):
            await queue.enqueue(_make_job())
        with pytest.raises(QueueUnavailableError):
            await queue.dequeue(timeout=0)
        assert await queue.ping() is False

    @pytest.mark.asyncio
    async def test_ping(self):
        assert await _make_redis_queue().ping() is True
