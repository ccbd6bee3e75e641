# jobs/worker_pool.py
"""
Bounded pool of worker loops: claim -> retrieve -> package -> link -> commit.

Pool size caps concurrent retrievals for this process. When every worker
is busy, queued jobs simply wait in pending.

Cancellation is cooperative: each worker checks the job between files,
so cancellation latency is one file retrieval, not zero.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import platform
import uuid

from api.app.config import Settings
from jobs.errors import Conflict, ErrorKind, JobCancelled, LeaseLost, RetrievalError
from jobs.queue import JobQueue
from jobs.states import JobStatus, is_terminal
from jobs.store import JobStore
from models.job import Job
from models.work_item import WorkItem
from services.notifier import JobNotifier
from services.retrieval import FileRetriever, RetrievedFile
from services.storage import StorageClient, StorageError

logger = logging.getLogger(__name__)

EXHAUSTED_MESSAGE = "Retrieval failed after repeated errors"


def make_worker_prefix() -> str:
    return f"worker-{platform.node()}-{uuid.uuid4().hex[:8]}"


class WorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        store: JobStore,
        retriever: FileRetriever,
        storage: StorageClient,
        settings: Settings,
        notifier: JobNotifier | None = None,
        size: int | None = None,
        prefix: str | None = None,
    ):
        self._queue = queue
        self._store = store
        self._retriever = retriever
        self._storage = storage
        self._settings = settings
        self._notifier = notifier
        self._size = size or settings.worker_pool_size
        self._prefix = prefix or make_worker_prefix()
        self._tasks: list[asyncio.Task] = []
        self._stop = asyncio.Event()

    @property
    def worker_ids(self) -> list[str]:
        return [f"{self._prefix}-{i}" for i in range(self._size)]

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._tasks = [asyncio.create_task(self._run(wid), name=wid) for wid in self.worker_ids]
        logger.info("Worker pool %s started with %d workers", self._prefix, self._size)

    async def stop(self) -> None:
        self._stop.set()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool %s stopped", self._prefix)

    # ─────────────────────────────────────────────
    # loop
    # ─────────────────────────────────────────────

    async def _run(self, worker_id: str) -> None:
        base = self._settings.worker_poll_interval
        interval = base

        while not self._stop.is_set():
            try:
                handled = await self.process_next(worker_id)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Worker %s loop error: %s", worker_id, exc)
                handled = False

            if handled:
                interval = base
                continue

            # empty queue: back off, wake early on stop()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            interval = min(interval * 2, self._settings.worker_poll_max_interval)

    async def process_next(self, worker_id: str) -> bool:
        """Claim and process one item. Returns False when the queue was empty."""
        item = await self._queue.claim(worker_id, self._settings.lease_seconds)
        if item is None:
            return False
        await self.process(item, worker_id)
        return True

    # ─────────────────────────────────────────────
    # one delivery
    # ─────────────────────────────────────────────

    async def process(self, item: WorkItem, worker_id: str) -> None:
        token = item.lease_token
        job = await self._store.get(item.job_id)

        if job is None or is_terminal(job.status):
            # cancelled while queued, or a stray redelivery
            await self._queue.ack(item.job_id, token)
            return

        if job.attempt_count >= job.max_attempts:
            # previous holder crashed on its final attempt
            await self._fail_unleased(job, token)
            return

        try:
            job = await self._store.begin_attempt(job.id, worker_id, token)
        except Conflict as exc:
            logger.info("Worker %s skipping job %s: %s", worker_id, item.job_id, exc)
            await self._queue.ack(item.job_id, token)
            return

        logger.info(
            "Worker %s processing job %s attempt %d/%d trace=%s",
            worker_id,
            job.id,
            job.attempt_count,
            job.max_attempts,
            job.trace_id,
        )

        write_lock = asyncio.Lock()
        lease_lost = asyncio.Event()
        heartbeat = asyncio.create_task(self._heartbeat(job, token, write_lock, lease_lost))
        artifact_ref: str | None = None

        try:
            artifact_ref = await self._execute(job, token, write_lock, lease_lost)
            link = await self._storage.issue_access_link(artifact_ref)
            async with write_lock:
                job = await self._store.complete(
                    job.id,
                    token,
                    access_url=link.url,
                    expires_at=link.expires_at,
                    artifact_ref=artifact_ref,
                )
        except JobCancelled:
            await self._abandon_cancelled(job, token, artifact_ref)
            return
        except Conflict as exc:
            await self._settle_conflict(job, token, artifact_ref, exc)
            return
        except RetrievalError as exc:
            await self._handle_failure(job, token, exc, retryable=exc.retryable, write_lock=write_lock)
            return
        except StorageError as exc:
            await self._handle_failure(job, token, exc, retryable=True, write_lock=write_lock)
            return
        except Exception as exc:
            logger.exception("Job %s crashed in worker %s trace=%s", job.id, worker_id, job.trace_id)
            await self._handle_failure(job, token, exc, retryable=True, write_lock=write_lock)
            return
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

        await self._queue.ack(job.id, token)
        logger.info("Job %s completed by %s trace=%s", job.id, worker_id, job.trace_id)
        await self._notify(job)

    async def _execute(
        self,
        job: Job,
        token: str,
        write_lock: asyncio.Lock,
        lease_lost: asyncio.Event,
    ) -> str:
        files: list[RetrievedFile] = []
        for index, file_id in enumerate(job.file_ids):
            await self._checkpoint(job, token, lease_lost)
            files.append(await self._retriever.retrieve(file_id))
            async with write_lock:
                await self._store.update_progress(job.id, token, index + 1)

        await self._checkpoint(job, token, lease_lost)
        return await self._retriever.package(job.id, files, self._storage)

    async def _checkpoint(self, job: Job, token: str, lease_lost: asyncio.Event) -> None:
        if lease_lost.is_set():
            raise LeaseLost(f"Lease on job {job.id} expired", trace_id=job.trace_id)
        await self._store.checkpoint(job.id, token)

    async def _heartbeat(
        self,
        job: Job,
        token: str,
        write_lock: asyncio.Lock,
        lease_lost: asyncio.Event,
    ) -> None:
        """Keep the lease alive and updated_at fresh while work is ongoing."""
        while True:
            await asyncio.sleep(self._settings.heartbeat_interval)
            try:
                async with write_lock:
                    if not await self._queue.extend_lease(job.id, token, self._settings.lease_seconds):
                        lease_lost.set()
                        return
                    await self._store.heartbeat(job.id, token)
            except JobCancelled:
                return
            except LeaseLost:
                lease_lost.set()
                return
            except Exception as exc:
                logger.warning("Heartbeat for job %s failed: %s trace=%s", job.id, exc, job.trace_id)

    # ─────────────────────────────────────────────
    # outcomes
    # ─────────────────────────────────────────────

    async def _handle_failure(
        self,
        job: Job,
        token: str,
        exc: Exception,
        *,
        retryable: bool,
        write_lock: asyncio.Lock,
    ) -> None:
        try:
            async with write_lock:
                if retryable and job.attempt_count < job.max_attempts:
                    await self._store.release_for_retry(job.id, token, reason=f"{type(exc).__name__}: {exc}")
                    await self._queue.nack(job.id, token)
                    logger.warning(
                        "Job %s retry %d/%d after %s trace=%s",
                        job.id,
                        job.attempt_count,
                        job.max_attempts,
                        type(exc).__name__,
                        job.trace_id,
                    )
                    return

                if retryable:
                    message = EXHAUSTED_MESSAGE
                else:
                    message = getattr(exc, "message", None) or "Requested file could not be retrieved"
                failed = await self._store.fail(job.id, ErrorKind.FATAL_RETRIEVAL, message, lease_token=token)
        except JobCancelled:
            await self._abandon_cancelled(job, token, None)
            return
        except Conflict as exc:
            logger.warning("Could not record failure of job %s: %s trace=%s", job.id, exc, job.trace_id)
            return

        await self._queue.ack(job.id, token)
        logger.error(
            "Job %s permanently failed after %d attempts trace=%s",
            job.id,
            failed.attempt_count,
            job.trace_id,
        )
        await self._notify(failed)

    async def _fail_unleased(self, job: Job, token: str) -> None:
        try:
            failed = await self._store.fail(
                job.id,
                ErrorKind.FATAL_RETRIEVAL,
                EXHAUSTED_MESSAGE,
                expected_version=job.version,
            )
        except Conflict as exc:
            logger.info("Job %s moved on before it could be failed: %s", job.id, exc)
            return
        await self._queue.ack(job.id, token)
        await self._notify(failed)

    async def _abandon_cancelled(self, job: Job, token: str, artifact_ref: str | None) -> None:
        logger.info("Job %s cancelled; worker stopping trace=%s", job.id, job.trace_id)
        if artifact_ref:
            with contextlib.suppress(StorageError, OSError):
                await self._storage.delete(artifact_ref)
        await self._queue.ack(job.id, token)

    async def _settle_conflict(self, job: Job, token: str, artifact_ref: str | None, exc: Conflict) -> None:
        current = await self._store.get(job.id)
        if current is not None and current.status == JobStatus.CANCELLED.value:
            await self._abandon_cancelled(job, token, artifact_ref)
            return
        # another holder owns the job now; leave its item alone
        logger.warning("Job %s: %s trace=%s", job.id, exc, job.trace_id)

    async def _notify(self, job: Job) -> None:
        if self._notifier is not None and job.notification_url:
            await self._notifier.notify(job)
