# jobs/queue.py
"""
Work distribution backed by the work_items table.

At-least-once: a claimed item that is neither acked nor extended becomes
claimable again once its lease expires. Only one claim per job is ever
active. FIFO by enqueue time is best effort, not a guarantee.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from db.session import SessionFactory, transaction
from jobs.errors import EnqueueError
from models.base import utcnow
from models.work_item import WorkItem

logger = logging.getLogger(__name__)

LEASE_SECONDS = 30.0


class JobQueue:
    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Callable[[], datetime] = utcnow,
        lease_seconds: float = LEASE_SECONDS,
    ):
        self._sessions = session_factory
        self._clock = clock
        self._lease_seconds = lease_seconds

    async def enqueue(self, job_id: uuid.UUID) -> WorkItem:
        """
        Add a work item for the job. A second enqueue for a job that
        already has an item is a no-op returning the existing item.
        """
        try:
            async with transaction(self._sessions) as db:
                item = await db.get(WorkItem, job_id)
                if item is not None:
                    logger.info("Job %s already queued; skipping duplicate enqueue", job_id)
                    return item
                item = WorkItem(job_id=job_id, enqueued_at=self._clock(), delivery_count=0)
                db.add(item)
                await db.flush()
        except IntegrityError as exc:
            # concurrent enqueue for the same job won the insert
            existing = await self.get(job_id)
            if existing is None:
                raise EnqueueError(f"Could not enqueue job {job_id}: {exc}") from exc
            return existing
        except SQLAlchemyError as exc:
            raise EnqueueError(f"Could not enqueue job {job_id}: {exc}") from exc

        logger.info("Enqueued job %s", job_id)
        return item

    async def claim(self, worker_id: str, lease_duration: float | None = None) -> WorkItem | None:
        """
        Claim one unclaimed or lease-expired item, or return None.

        The row is locked with SKIP LOCKED where the backend supports it;
        the delivery_count compare-and-swap below is what guarantees a
        single winner when two workers read the same row.
        """
        now = self._clock()
        lease = self._lease_seconds if lease_duration is None else lease_duration

        stmt = (
            select(WorkItem)
            .where(
                or_(
                    # never claimed, or released by nack
                    WorkItem.claimed_by.is_(None),
                    # claimant went quiet
                    WorkItem.lease_expires_at <= now,
                )
            )
            .order_by(WorkItem.enqueued_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )

        async with transaction(self._sessions) as db:
            item = (await db.execute(stmt)).scalar_one_or_none()
            if item is None:
                return None

            token = uuid.uuid4().hex
            result = await db.execute(
                update(WorkItem)
                .where(
                    WorkItem.job_id == item.job_id,
                    WorkItem.delivery_count == item.delivery_count,
                )
                .values(
                    claimed_by=worker_id,
                    lease_token=token,
                    lease_expires_at=now + timedelta(seconds=lease),
                    delivery_count=item.delivery_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.debug("Worker %s lost claim race for job %s", worker_id, item.job_id)
                return None
            await db.refresh(item)

        logger.info(
            "Worker %s claimed job %s (delivery %d)",
            worker_id,
            item.job_id,
            item.delivery_count,
        )
        return item

    async def ack(self, job_id: uuid.UUID, lease_token: str) -> bool:
        """Remove the item; only the current lease holder may ack."""
        async with transaction(self._sessions) as db:
            result = await db.execute(
                delete(WorkItem)
                .where(WorkItem.job_id == job_id, WorkItem.lease_token == lease_token)
                .execution_options(synchronize_session=False)
            )
        acked = result.rowcount == 1
        if not acked:
            logger.warning("Ack for job %s ignored: lease no longer held", job_id)
        return acked

    async def nack(self, job_id: uuid.UUID, lease_token: str) -> bool:
        """Return the item to the pool for immediate re-claim."""
        async with transaction(self._sessions) as db:
            result = await db.execute(
                update(WorkItem)
                .where(WorkItem.job_id == job_id, WorkItem.lease_token == lease_token)
                .values(claimed_by=None, lease_token=None, lease_expires_at=None)
                .execution_options(synchronize_session=False)
            )
        released = result.rowcount == 1
        if not released:
            logger.warning("Nack for job %s ignored: lease no longer held", job_id)
        return released

    async def extend_lease(
        self,
        job_id: uuid.UUID,
        lease_token: str,
        lease_duration: float | None = None,
    ) -> bool:
        lease = self._lease_seconds if lease_duration is None else lease_duration
        async with transaction(self._sessions) as db:
            result = await db.execute(
                update(WorkItem)
                .where(WorkItem.job_id == job_id, WorkItem.lease_token == lease_token)
                .values(lease_expires_at=self._clock() + timedelta(seconds=lease))
                .execution_options(synchronize_session=False)
            )
        return result.rowcount == 1

    async def remove(self, job_id: uuid.UUID) -> bool:
        """Discard the item whoever holds it. Used once a job is terminal."""
        async with transaction(self._sessions) as db:
            result = await db.execute(
                delete(WorkItem)
                .where(WorkItem.job_id == job_id)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount > 0

    async def get(self, job_id: uuid.UUID) -> WorkItem | None:
        async with self._sessions() as db:
            return await db.get(WorkItem, job_id)

    async def depth(self) -> int:
        async with self._sessions() as db:
            return (await db.execute(select(func.count()).select_from(WorkItem))).scalar_one()
