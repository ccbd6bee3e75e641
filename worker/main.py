# worker/main.py
"""
Background worker process: runs a bounded worker pool and the expiry
sweeper until interrupted. Scale out by running more processes; the
queue guarantees a single active claim per job across all of them.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys

# Ensure project root is on path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from api.app.config import get_settings
from api.app.dependencies import (
    get_job_queue,
    get_job_store,
    get_notifier,
    get_retriever,
    get_storage,
)
from db.engine import dispose_engine
from jobs.sweeper import ExpirySweeper
from jobs.worker_pool import WorkerPool

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("worker")


async def run() -> None:
    settings = get_settings()

    pool = WorkerPool(
        queue=get_job_queue(),
        store=get_job_store(),
        retriever=get_retriever(),
        storage=get_storage(),
        settings=settings,
        notifier=get_notifier(),
    )
    sweeper = ExpirySweeper(
        store=get_job_store(),
        queue=get_job_queue(),
        storage=get_storage(),
        settings=settings,
        notifier=get_notifier(),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops
            pass

    logger.info(
        "Starting %d workers (poll=%.1fs, lease=%.0fs, max_attempts=%d)",
        settings.worker_pool_size,
        settings.worker_poll_interval,
        settings.lease_seconds,
        settings.job_max_attempts,
    )
    await pool.start()
    await sweeper.start()

    try:
        await stop.wait()
    finally:
        logger.info("Shutting down worker process")
        await sweeper.stop()
        await pool.stop()
        await dispose_engine()


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
