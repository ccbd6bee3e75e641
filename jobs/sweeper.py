# jobs/sweeper.py
"""
Periodic housekeeping, independent of any worker:

- processing jobs that stopped heartbeating are failed(timeout) and their
  queue entry dropped, so nothing re-claims them;
- terminal jobs past retention are purged along with their artifact;
- pending jobs that never reached the queue are enqueued again.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from api.app.config import Settings
from jobs.errors import Conflict, EnqueueError, JobTimeout, NotFound
from jobs.queue import JobQueue
from jobs.store import JobStore
from models.base import utcnow
from services.notifier import JobNotifier
from services.storage import StorageClient, StorageError

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Job timed out while processing"


@dataclass
class SweepReport:
    timed_out: list[uuid.UUID] = field(default_factory=list)
    purged: list[uuid.UUID] = field(default_factory=list)
    requeued: list[uuid.UUID] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.timed_out or self.purged or self.requeued)


class ExpirySweeper:
    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        storage: StorageClient,
        settings: Settings,
        notifier: JobNotifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._queue = queue
        self._storage = storage
        self._settings = settings
        self._notifier = notifier
        self._clock = clock
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self.run(), name="expiry-sweeper")

    async def stop(self) -> None:
        self._stop.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    async def run(self) -> None:
        interval = self._settings.sweep_interval_seconds
        logger.info("Expiry sweeper running every %.1fs", interval)
        while not self._stop.is_set():
            try:
                report = await self.sweep_once()
                if not report.empty:
                    logger.info(
                        "Sweep: %d timed out, %d purged, %d requeued",
                        len(report.timed_out),
                        len(report.purged),
                        len(report.requeued),
                    )
            except Exception as exc:
                logger.exception("Sweeper error: %s", exc)

            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=interval)

    async def sweep_once(self) -> SweepReport:
        now = self._clock()
        report = SweepReport()
        await self._fail_stalled(now, report)
        await self._purge_expired(now, report)
        await self._requeue_orphans(now, report)
        return report

    async def _fail_stalled(self, now: datetime, report: SweepReport) -> None:
        cutoff = now - timedelta(seconds=self._settings.stall_threshold_seconds)
        for job in await self._store.list_stalled(cutoff):
            timeout = JobTimeout(TIMEOUT_MESSAGE, trace_id=job.trace_id)
            try:
                failed = await self._store.fail(
                    job.id,
                    timeout.kind,
                    timeout.message,
                    expected_version=job.version,
                    source="sweeper",
                )
            except (Conflict, NotFound) as exc:
                # heartbeat or commit landed after the listing
                logger.info("Stalled job %s moved on: %s", job.id, exc)
                continue

            await self._queue.remove(job.id)
            report.timed_out.append(job.id)
            logger.warning(
                "Job %s timed out (claimed_by=%s, attempt %d) trace=%s",
                job.id,
                job.claimed_by,
                job.attempt_count,
                job.trace_id,
            )
            if self._notifier is not None and failed.notification_url:
                await self._notifier.notify(failed)

    async def _purge_expired(self, now: datetime, report: SweepReport) -> None:
        cutoff = now - timedelta(seconds=self._settings.retention_seconds)
        for job in await self._store.list_expired(cutoff):
            if job.artifact_ref:
                try:
                    await self._storage.delete(job.artifact_ref)
                except (StorageError, OSError) as exc:
                    # keep the record so the next sweep retries the delete
                    logger.warning("Could not delete artifact for job %s: %s trace=%s", job.id, exc, job.trace_id)
                    continue

            try:
                await self._store.purge(job.id, job.version)
            except (Conflict, NotFound) as exc:
                logger.info("Skipping purge of job %s: %s", job.id, exc)
                continue
            report.purged.append(job.id)

    async def _requeue_orphans(self, now: datetime, report: SweepReport) -> None:
        cutoff = now - timedelta(seconds=self._settings.orphan_grace_seconds)
        for job in await self._store.list_orphaned(cutoff):
            try:
                await self._queue.enqueue(job.id)
            except EnqueueError as exc:
                logger.warning("Could not requeue orphaned job %s: %s trace=%s", job.id, exc, job.trace_id)
                continue
            report.requeued.append(job.id)
            logger.warning("Requeued orphaned pending job %s trace=%s", job.id, job.trace_id)
