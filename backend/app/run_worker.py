"""
Standalone worker process: worker pool and (optionally) the scheduler,
without the HTTP surface.

Run with:
    python -m backend.app.run_worker

Scale delivery by running more of these against the same Redis queue and
database; set RUN_SCHEDULER=false on all but one of them. SIGINT/SIGTERM
drain in-flight jobs for up to WORKER_SHUTDOWN_GRACE_SECONDS.
"""

from __future__ import annotations

import asyncio
import signal

from backend.app.core.config import settings
from backend.app.core.logging_config import get_logger, setup_logging
from backend.app.runtime import DispatchRuntime

logger = get_logger(__name__)


async def run() -> None:
    runtime = DispatchRuntime.from_settings(settings)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    await runtime.start()
    logger.info("Worker process running; waiting for shutdown signal")
    try:
        await shutdown.wait()
    finally:
        logger.info("Shutdown signal received; draining")
        await runtime.stop()


def main() -> None:
    setup_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
