# jobs/manager.py
"""
Client-facing façade: CreateJob / GetStatus / CancelJob.

Creation is write-then-enqueue. Enqueue is retried with backoff; if it
still fails the job is committed as failed(enqueue_error) so no job is
ever left pending without a queue entry.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError

from api.app.config import Settings
from jobs.errors import EnqueueError, InvalidInput, NotFound
from jobs.queue import JobQueue
from jobs.states import JobStatus
from jobs.store import JobStore
from models.base import utcnow
from models.job import Job
from services.notifier import JobNotifier
from services.observability import new_trace_id
from services.retrieval import FileAvailability, FileRetriever
from services.storage import StorageClient, StorageError

logger = logging.getLogger(__name__)

ENQUEUE_FAILED_MESSAGE = "Job could not be queued. Please submit it again."


class JobManager:
    def __init__(
        self,
        store: JobStore,
        queue: JobQueue,
        settings: Settings,
        storage: StorageClient | None = None,
        retriever: FileRetriever | None = None,
        notifier: JobNotifier | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._queue = queue
        self._settings = settings
        self._storage = storage
        self._retriever = retriever
        self._notifier = notifier
        self._sleep = sleep
        self._clock = clock

    # ─────────────────────────────────────────────
    # validation
    # ─────────────────────────────────────────────

    def _validate_file_id(self, file_id, trace_id: str | None = None) -> None:
        s = self._settings
        if isinstance(file_id, bool) or not isinstance(file_id, int):
            raise InvalidInput(f"file_id must be an integer, got {file_id!r}", trace_id=trace_id)
        if not s.file_id_min <= file_id <= s.file_id_max:
            raise InvalidInput(
                f"file_id {file_id} is outside the valid range {s.file_id_min}-{s.file_id_max}",
                trace_id=trace_id,
            )

    def validate_file_ids(self, file_ids: list[int], trace_id: str | None = None) -> None:
        if not file_ids:
            raise InvalidInput("file_ids must contain at least one file", trace_id=trace_id)
        if len(file_ids) > self._settings.max_file_ids:
            raise InvalidInput(
                f"At most {self._settings.max_file_ids} files per job, got {len(file_ids)}",
                trace_id=trace_id,
            )
        for file_id in file_ids:
            self._validate_file_id(file_id, trace_id)

    # ─────────────────────────────────────────────
    # operations
    # ─────────────────────────────────────────────

    async def create_job(
        self,
        file_ids: list[int],
        idempotency_key: str | None = None,
        *,
        trace_id: str | None = None,
        notification_url: str | None = None,
    ) -> Job:
        trace_id = trace_id or new_trace_id()
        self.validate_file_ids(file_ids, trace_id)

        if idempotency_key:
            existing = await self._store.get_by_idempotency_key(idempotency_key)
            if existing is not None:
                logger.info(
                    "Idempotent replay: key %s maps to job %s trace=%s",
                    idempotency_key,
                    existing.id,
                    existing.trace_id,
                )
                return existing

        try:
            job = await self._store.create(
                file_ids,
                trace_id=trace_id,
                max_attempts=self._settings.job_max_attempts,
                idempotency_key=idempotency_key,
                notification_url=notification_url,
            )
        except IntegrityError:
            # a concurrent create with the same key committed first
            if idempotency_key:
                existing = await self._store.get_by_idempotency_key(idempotency_key)
                if existing is not None:
                    return existing
            raise

        return await self._enqueue_or_fail(job)

    async def _enqueue_or_fail(self, job: Job) -> Job:
        attempts = max(1, self._settings.enqueue_max_attempts)
        delay = self._settings.enqueue_retry_delay

        for attempt in range(1, attempts + 1):
            try:
                await self._queue.enqueue(job.id)
                return job
            except EnqueueError as exc:
                logger.warning(
                    "Enqueue of job %s failed (%d/%d): %s trace=%s",
                    job.id,
                    attempt,
                    attempts,
                    exc,
                    job.trace_id,
                )
                if attempt < attempts:
                    await self._sleep(delay)
                    delay *= 2

        logger.error("Job %s could not be enqueued; marking failed trace=%s", job.id, job.trace_id)
        failed = await self._store.fail(
            job.id,
            EnqueueError.kind,
            ENQUEUE_FAILED_MESSAGE,
            source="manager",
        )
        await self._notify(failed)
        return failed

    async def get_status(self, job_id: uuid.UUID) -> Job:
        """
        Current snapshot, never blocks on the job. An expired access link
        is re-issued in the returned snapshot only; the stored result is
        left as committed.
        """
        job = await self._store.get(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")

        if job.status == JobStatus.COMPLETED.value and self._link_expired(job):
            await self._refresh_link(job)
        return job

    async def cancel_job(self, job_id: uuid.UUID) -> Job:
        """
        Cancel a pending or processing job. A processing worker notices
        at its next checkpoint, so in-flight retrieval finishes first.
        """
        job = await self._store.cancel(job_id)
        # an unclaimed item is dropped here; a claimed one is acked by its holder
        item = await self._queue.get(job.id)
        if item is not None and item.claimed_by is None:
            await self._queue.remove(job.id)
        logger.info("Job %s cancelled trace=%s", job.id, job.trace_id)
        await self._notify(job)
        return job

    async def check_file(self, file_id: int, trace_id: str | None = None) -> FileAvailability:
        self._validate_file_id(file_id, trace_id)
        if self._retriever is None:
            raise RuntimeError("No file retriever configured")
        return await self._retriever.check(file_id)

    # ─────────────────────────────────────────────
    # helpers
    # ─────────────────────────────────────────────

    def _link_expired(self, job: Job) -> bool:
        if not job.result or not job.result.get("expires_at"):
            return False
        expires_at = datetime.fromisoformat(job.result["expires_at"])
        return expires_at <= self._clock()

    async def _refresh_link(self, job: Job) -> None:
        if self._storage is None or not job.artifact_ref:
            return
        try:
            link = await self._storage.issue_access_link(job.artifact_ref)
        except StorageError as exc:
            logger.warning("Could not re-issue link for job %s: %s trace=%s", job.id, exc, job.trace_id)
            return
        # detached snapshot; never flushed
        job.result = {"access_url": link.url, "expires_at": link.expires_at.isoformat()}

    async def _notify(self, job: Job) -> None:
        if self._notifier is not None and job.notification_url:
            await self._notifier.notify(job)
