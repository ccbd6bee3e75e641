# jobs/store.py
"""
Durable job records: the single source of truth for job state.

Every mutating write is a compare-and-swap on `Job.version`, so a write
based on a stale read loses instead of overwriting. Writes that come
from a worker also carry the worker's lease token and are rejected once
the lease has been reassigned.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import delete, exists, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.session import SessionFactory, transaction
from jobs.errors import Conflict, ErrorKind, JobCancelled, LeaseLost, NotFound, StaleWrite
from jobs.states import TERMINAL_STATES, JobStatus, ensure_transition
from models.base import utcnow
from models.job import Job
from models.work_item import WorkItem
from services.observability import log_event

logger = logging.getLogger(__name__)

TERMINAL_VALUES = [s.value for s in TERMINAL_STATES]
CANCEL_ATTEMPTS = 5


class JobStore:
    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._sessions = session_factory
        self._clock = clock

    # ─────────────────────────────────────────────
    # reads
    # ─────────────────────────────────────────────

    async def get(self, job_id: uuid.UUID) -> Job | None:
        async with self._sessions() as db:
            return await db.get(Job, job_id)

    async def get_by_idempotency_key(self, key: str) -> Job | None:
        async with self._sessions() as db:
            result = await db.execute(select(Job).where(Job.idempotency_key == key))
            return result.scalar_one_or_none()

    async def list_stalled(self, cutoff: datetime, limit: int = 100) -> list[Job]:
        """
        Leased processing jobs with no heartbeat or progress since `cutoff`.
        A job released for retry holds no lease and is only waiting for a
        free worker, so it is never stalled.
        """
        stmt = (
            select(Job)
            .where(
                Job.status == JobStatus.PROCESSING.value,
                Job.lease_token.is_not(None),
                Job.updated_at < cutoff,
            )
            .order_by(Job.updated_at.asc())
            .limit(limit)
        )
        async with self._sessions() as db:
            return list((await db.execute(stmt)).scalars())

    async def list_expired(self, cutoff: datetime, limit: int = 100) -> list[Job]:
        """Terminal jobs that finished before `cutoff`."""
        stmt = (
            select(Job)
            .where(Job.status.in_(TERMINAL_VALUES), Job.finished_at < cutoff)
            .order_by(Job.finished_at.asc())
            .limit(limit)
        )
        async with self._sessions() as db:
            return list((await db.execute(stmt)).scalars())

    async def list_orphaned(self, cutoff: datetime, limit: int = 100) -> list[Job]:
        """Pending jobs created before `cutoff` that have no queue entry."""
        stmt = (
            select(Job)
            .where(
                Job.status == JobStatus.PENDING.value,
                Job.created_at < cutoff,
                ~exists().where(WorkItem.job_id == Job.id),
            )
            .order_by(Job.created_at.asc())
            .limit(limit)
        )
        async with self._sessions() as db:
            return list((await db.execute(stmt)).scalars())

    # ─────────────────────────────────────────────
    # client-side writes
    # ─────────────────────────────────────────────

    async def create(
        self,
        file_ids: list[int],
        *,
        trace_id: str,
        max_attempts: int,
        idempotency_key: str | None = None,
        notification_url: str | None = None,
    ) -> Job:
        """
        Insert a pending job. A duplicate idempotency key surfaces as
        sqlalchemy IntegrityError for the caller to resolve.
        """
        now = self._clock()
        job = Job(
            id=uuid.uuid4(),
            status=JobStatus.PENDING.value,
            file_ids=list(file_ids),
            progress_current=0,
            progress_total=len(file_ids),
            attempt_count=0,
            max_attempts=max_attempts,
            idempotency_key=idempotency_key,
            trace_id=trace_id,
            notification_url=notification_url,
            version=1,
            created_at=now,
            updated_at=now,
        )
        async with transaction(self._sessions) as db:
            db.add(job)
            await db.flush()
            await log_event(
                db,
                "job_created",
                source="manager",
                trace_id=trace_id,
                metadata={"job_id": str(job.id), "file_count": len(file_ids)},
            )
        return job

    async def cancel(self, job_id: uuid.UUID) -> Job:
        """
        Cancel a pending or processing job. Heartbeats and progress writes
        from the worker can bump the version between our read and write;
        those are re-read and retried. Only a terminal job conflicts.
        """
        for attempt in range(1, CANCEL_ATTEMPTS + 1):
            try:
                async with transaction(self._sessions) as db:
                    job = await self._load(db, job_id)
                    ensure_transition(job.status, JobStatus.CANCELLED)
                    return await self._write(
                        db,
                        job,
                        status=JobStatus.CANCELLED.value,
                        finished_at=self._clock(),
                        claimed_by=None,
                        lease_token=None,
                        event=("job_cancelled", "info", "manager"),
                        metadata={"previous_status": job.status},
                    )
            except StaleWrite:
                logger.info("Cancel of job %s raced a concurrent write (%d/%d)", job_id, attempt, CANCEL_ATTEMPTS)

        raise Conflict(f"Job {job_id} kept changing; cancel not applied")

    async def fail(
        self,
        job_id: uuid.UUID,
        kind: ErrorKind,
        message: str,
        *,
        lease_token: str | None = None,
        expected_version: int | None = None,
        source: str = "worker",
    ) -> Job:
        """
        Commit a failed job. Workers pass their lease token; the sweeper
        passes the version it observed when it decided the job was stale.
        """
        async with transaction(self._sessions) as db:
            if lease_token is not None:
                job = await self._load_leased(db, job_id, lease_token)
            else:
                job = await self._load(db, job_id)
            if expected_version is not None and job.version != expected_version:
                raise Conflict(f"Job {job_id} changed since it was read", trace_id=job.trace_id)
            ensure_transition(job.status, JobStatus.FAILED)
            return await self._write(
                db,
                job,
                status=JobStatus.FAILED.value,
                error_kind=ErrorKind(kind).value,
                error_message=message,
                finished_at=self._clock(),
                claimed_by=None,
                lease_token=None,
                event=("job_failed", "error", source),
                metadata={"kind": ErrorKind(kind).value, "attempt_count": job.attempt_count},
                message=message,
            )

    async def purge(self, job_id: uuid.UUID, expected_version: int) -> None:
        async with transaction(self._sessions) as db:
            job = await self._load(db, job_id)
            if job.version != expected_version:
                raise Conflict(f"Job {job_id} changed since it was read", trace_id=job.trace_id)
            await db.execute(delete(WorkItem).where(WorkItem.job_id == job_id))
            result = await db.execute(
                delete(Job)
                .where(Job.id == job_id, Job.version == expected_version)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise Conflict(f"Job {job_id} changed since it was read", trace_id=job.trace_id)
            await log_event(
                db,
                "job_purged",
                source="sweeper",
                trace_id=job.trace_id,
                metadata={"job_id": str(job_id), "status": job.status},
            )

    # ─────────────────────────────────────────────
    # worker-side writes (lease guarded)
    # ─────────────────────────────────────────────

    async def begin_attempt(self, job_id: uuid.UUID, worker_id: str, lease_token: str) -> Job:
        """
        Bind a freshly claimed lease to the job. First delivery moves
        pending -> processing; redeliveries keep processing and count
        as another attempt.
        """
        async with transaction(self._sessions) as db:
            job = await self._load(db, job_id)
            first = job.status == JobStatus.PENDING.value
            if first:
                ensure_transition(job.status, JobStatus.PROCESSING)
            elif job.status != JobStatus.PROCESSING.value:
                raise Conflict(f"Job is already {job.status}", trace_id=job.trace_id)

            return await self._write(
                db,
                job,
                status=JobStatus.PROCESSING.value,
                claimed_by=worker_id,
                lease_token=lease_token,
                attempt_count=job.attempt_count + 1,
                event=("job_processing" if first else "job_redelivered", "info" if first else "warning", "worker"),
                metadata={"worker_id": worker_id, "attempt": job.attempt_count + 1},
            )

    async def update_progress(self, job_id: uuid.UUID, lease_token: str, current: int) -> Job:
        """Advance progress; never moves it backwards."""
        async with transaction(self._sessions) as db:
            job = await self._load_leased(db, job_id, lease_token)
            current = min(current, job.progress_total)
            if current <= job.progress_current:
                return await self._write(db, job)
            return await self._write(db, job, progress_current=current)

    async def heartbeat(self, job_id: uuid.UUID, lease_token: str) -> Job:
        async with transaction(self._sessions) as db:
            job = await self._load_leased(db, job_id, lease_token)
            return await self._write(db, job)

    async def checkpoint(self, job_id: uuid.UUID, lease_token: str) -> Job:
        """Read-only lease check; raises JobCancelled / LeaseLost."""
        async with self._sessions() as db:
            return await self._load_leased(db, job_id, lease_token)

    async def release_for_retry(self, job_id: uuid.UUID, lease_token: str, reason: str) -> Job:
        """Drop the lease after a retryable failure; status stays processing."""
        async with transaction(self._sessions) as db:
            job = await self._load_leased(db, job_id, lease_token)
            return await self._write(
                db,
                job,
                claimed_by=None,
                lease_token=None,
                event=("job_retry", "warning", "worker"),
                metadata={"attempt": job.attempt_count, "max_attempts": job.max_attempts},
                message=reason,
            )

    async def complete(
        self,
        job_id: uuid.UUID,
        lease_token: str,
        *,
        access_url: str,
        expires_at: datetime,
        artifact_ref: str,
    ) -> Job:
        async with transaction(self._sessions) as db:
            job = await self._load_leased(db, job_id, lease_token)
            ensure_transition(job.status, JobStatus.COMPLETED)
            return await self._write(
                db,
                job,
                status=JobStatus.COMPLETED.value,
                result={"access_url": access_url, "expires_at": expires_at.isoformat()},
                artifact_ref=artifact_ref,
                progress_current=job.progress_total,
                finished_at=self._clock(),
                claimed_by=None,
                lease_token=None,
                event=("job_completed", "info", "worker"),
                metadata={"attempt": job.attempt_count},
            )

    # ─────────────────────────────────────────────
    # helpers
    # ─────────────────────────────────────────────

    async def _load(self, db: AsyncSession, job_id: uuid.UUID) -> Job:
        job = await db.get(Job, job_id, populate_existing=True)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        return job

    async def _load_leased(self, db: AsyncSession, job_id: uuid.UUID, lease_token: str) -> Job:
        job = await self._load(db, job_id)
        if job.status == JobStatus.CANCELLED.value:
            raise JobCancelled(f"Job {job_id} was cancelled", trace_id=job.trace_id)
        if job.status != JobStatus.PROCESSING.value or job.lease_token != lease_token:
            raise LeaseLost(f"Lease on job {job_id} is no longer held", trace_id=job.trace_id)
        return job

    async def _write(
        self,
        db: AsyncSession,
        job: Job,
        *,
        event: tuple[str, str, str] | None = None,
        metadata: dict | None = None,
        message: str | None = None,
        **values,
    ) -> Job:
        """Compare-and-swap on version; touches updated_at."""
        values.setdefault("updated_at", self._clock())
        stmt = (
            update(Job)
            .where(Job.id == job.id, Job.version == job.version)
            .values(version=job.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            raise StaleWrite(f"Job {job.id} was modified concurrently", trace_id=job.trace_id)
        await db.refresh(job)

        if event is not None:
            event_type, level, source = event
            await log_event(
                db,
                event_type,
                level,
                source=source,
                message=message,
                trace_id=job.trace_id,
                metadata={"job_id": str(job.id), "status": job.status, **(metadata or {})},
            )
        return job
