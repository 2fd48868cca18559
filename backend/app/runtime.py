"""
runtime.py — Process lifecycle for the dispatch engine.

Builds every collaborator from Settings and wires them together
explicitly; no component reaches for a global connection.

    DispatchRuntime.from_settings(settings)
        ├── redis client          (queue backend, in-app inbox)
        ├── engine + store        (sql | memory)
        ├── job queue             (redis | memory)
        ├── channel registry      (email, sms, in-app)
        ├── NotificationService   (submit, bulk, cancel, status)
        ├── CampaignService       (lifecycle, fan-out, analytics)
        ├── WorkerPool            (RUN_WORKERS)
        └── DispatchScheduler     (RUN_SCHEDULER)

    await runtime.start()   # tables (if configured), workers, sweeps
    await runtime.stop()    # sweeps off, workers drain, connections closed

Used by the FastAPI lifespan (main.py) and the standalone worker
process (run_worker.py).
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncEngine

from backend.app.core.config import Settings
from backend.app.core.database import build_engine, build_session_factory, close_db, init_db
from backend.app.core.redis_client import close_redis, create_redis_client
from backend.app.dispatch.campaigns import CampaignService
from backend.app.dispatch.channels.base import ChannelRegistry, build_channel_registry
from backend.app.dispatch.job_queue import InMemoryJobQueue, JobQueue, RedisJobQueue
from backend.app.dispatch.models import RetryPolicy
from backend.app.dispatch.scheduler import DispatchScheduler
from backend.app.dispatch.service import NotificationService
from backend.app.dispatch.worker import WorkerPool
from backend.app.storage.base import NotificationStore
from backend.app.storage.memory import InMemoryStore
from backend.app.storage.sql_store import SQLAlchemyStore

logger = logging.getLogger(__name__)


class DispatchRuntime:

    def __init__(
        self,
        config: Settings,
        *,
        store: NotificationStore,
        queue: JobQueue,
        channels: ChannelRegistry,
        redis: Optional[aioredis.Redis] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.settings = config
        self.store = store
        self.queue = queue
        self.channels = channels
        self.redis = redis
        self.engine = engine

        policy = RetryPolicy(
            max_attempts=config.QUEUE_MAX_ATTEMPTS,
            backoff_base_seconds=config.QUEUE_BACKOFF_BASE_SECONDS,
        )
        self.notifications = NotificationService(
            store, queue,
            retry_policy=policy,
            bulk_max_recipients=config.BULK_MAX_RECIPIENTS,
        )
        self.campaigns = CampaignService(store, queue, retry_policy=policy)
        self.workers = WorkerPool(
            queue, store, channels,
            concurrency=config.WORKER_CONCURRENCY,
            dequeue_timeout=config.WORKER_DEQUEUE_TIMEOUT_SECONDS,
        )
        self.scheduler = DispatchScheduler(
            store, queue,
            campaigns=self.campaigns,
            retry_policy=policy,
            promotion_interval_seconds=config.SCHEDULER_PROMOTION_INTERVAL_SECONDS,
            completion_interval_seconds=config.SCHEDULER_COMPLETION_INTERVAL_SECONDS,
            retention_hour=config.SCHEDULER_RETENTION_HOUR,
            retention_days=config.RETENTION_DAYS,
            batch_size=config.SCHEDULER_PROMOTION_BATCH_SIZE,
        )

    @classmethod
    def from_settings(cls, config: Settings) -> "DispatchRuntime":
        redis: Optional[aioredis.Redis] = None
        if config.QUEUE_BACKEND == "redis" or config.IN_APP_PROVIDER == "redis":
            redis = create_redis_client(config.REDIS_URL)

        engine: Optional[AsyncEngine] = None
        store: NotificationStore
        if config.STORE_BACKEND == "sql":
            engine = build_engine(
                config.DATABASE_URL,
                pool_size=config.DATABASE_POOL_SIZE,
                max_overflow=config.DATABASE_MAX_OVERFLOW,
                echo=config.DATABASE_ECHO,
            )
            store = SQLAlchemyStore(build_session_factory(engine))
        elif config.STORE_BACKEND == "memory":
            store = InMemoryStore()
        else:
            raise ValueError(f"Unknown STORE_BACKEND: {config.STORE_BACKEND}")

        policy = RetryPolicy(config.QUEUE_MAX_ATTEMPTS, config.QUEUE_BACKOFF_BASE_SECONDS)
        queue: JobQueue
        if config.QUEUE_BACKEND == "redis":
            queue = RedisJobQueue(
                redis,
                config.QUEUE_NAME,
                default_policy=policy,
                poll_interval=config.QUEUE_POLL_INTERVAL_SECONDS,
                visibility_timeout=config.QUEUE_VISIBILITY_TIMEOUT_SECONDS,
            )
        elif config.QUEUE_BACKEND == "memory":
            queue = InMemoryJobQueue(policy)
        else:
            raise ValueError(f"Unknown QUEUE_BACKEND: {config.QUEUE_BACKEND}")

        return cls(
            config,
            store=store,
            queue=queue,
            channels=build_channel_registry(config, redis),
            redis=redis,
            engine=engine,
        )

    async def start(self) -> None:
        if self.engine is not None and self.settings.DATABASE_CREATE_TABLES:
            await init_db(self.engine)
        if self.settings.RUN_WORKERS:
            await self.workers.start()
        if self.settings.RUN_SCHEDULER:
            await self.scheduler.start()
        logger.info(
            "Dispatch runtime started (store=%s, queue=%s, workers=%s, scheduler=%s)",
            self.settings.STORE_BACKEND, self.settings.QUEUE_BACKEND,
            self.settings.RUN_WORKERS, self.settings.RUN_SCHEDULER,
        )

    async def stop(self) -> None:
        await self.scheduler.stop(grace=self.settings.SCHEDULER_SHUTDOWN_GRACE_SECONDS)
        await self.workers.stop(grace=self.settings.WORKER_SHUTDOWN_GRACE_SECONDS)
        await self.channels.close()
        await self.queue.close()
        await self.store.close()
        if self.engine is not None:
            await close_db(self.engine)
        if self.redis is not None:
            await close_redis(self.redis)
        logger.info("Dispatch runtime stopped")
