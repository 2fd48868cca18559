"""
Health check aggregation — deep health probe for the dispatch engine.

Checks:
    • Persistent store connectivity (SQL or in-memory)
    • Job queue connectivity and backlog size
    • Worker pool tasks alive (when this process runs workers)
    • Scheduler running (when this process runs the scheduler)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.errors import DispatchEngineError

if TYPE_CHECKING:
    from backend.app.runtime import DispatchRuntime

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = ""
    environment: str = ""
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


async def check_store(runtime: "DispatchRuntime") -> ComponentHealth:
    comp = ComponentHealth(name="store", details={"backend": runtime.settings.STORE_BACKEND})
    start = time.monotonic()
    if await runtime.store.ping():
        comp.message = "Store reachable"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Store unreachable"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_queue(runtime: "DispatchRuntime") -> ComponentHealth:
    comp = ComponentHealth(name="job_queue", details={"backend": runtime.settings.QUEUE_BACKEND})
    start = time.monotonic()
    try:
        if not await runtime.queue.ping():
            comp.status = HealthStatus.UNHEALTHY
            comp.message = "Queue backend unreachable"
        else:
            comp.details["size"] = await runtime.queue.size()
            comp.message = "Queue reachable"
    except DispatchEngineError as e:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = e.message
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_workers(runtime: "DispatchRuntime") -> ComponentHealth:
    comp = ComponentHealth(name="workers", details={"enabled": runtime.settings.RUN_WORKERS})
    if not runtime.settings.RUN_WORKERS:
        comp.message = "Disabled in this process"
    elif runtime.workers.running:
        comp.message = f"{runtime.workers.concurrency} workers running"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Worker pool not running"
    return comp


async def check_scheduler(runtime: "DispatchRuntime") -> ComponentHealth:
    comp = ComponentHealth(name="scheduler", details={"enabled": runtime.settings.RUN_SCHEDULER})
    if not runtime.settings.RUN_SCHEDULER:
        comp.message = "Disabled in this process"
    elif runtime.scheduler.running:
        comp.message = "Sweeps scheduled"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Scheduler not running"
    return comp


async def run_health_check(runtime: "DispatchRuntime") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        version=runtime.settings.APP_VERSION,
        environment=runtime.settings.ENVIRONMENT,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_store, check_queue, check_workers, check_scheduler):
        report.components.append(await check(runtime))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
        logger.warning("Health check unhealthy: %s",
                       [c.name for c in report.components if c.status == HealthStatus.UNHEALTHY])
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
