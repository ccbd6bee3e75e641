# tests/test_job_store.py
"""
Tests for durable job state: legal transitions, version compare-and-swap,
lease-guarded worker writes and the event trail.
"""
from __future__ import annotations

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from jobs.errors import Conflict, ErrorKind, JobCancelled, LeaseLost, NotFound
from jobs.states import JobStatus
from models.event import Event

TRACE = "b" * 32


async def _processing(store, worker="worker-a", token="token-a", file_ids=(70000, 70001)):
    job = await store.create(list(file_ids), trace_id=TRACE, max_attempts=3)
    return await store.begin_attempt(job.id, worker, token)


async def _events(session_factory, trace_id=TRACE) -> list[str]:
    async with session_factory() as db:
        rows = await db.execute(
            select(Event).where(Event.trace_id == trace_id).order_by(Event.created_at)
        )
        return [e.event_type for e in rows.scalars()]


@pytest.mark.asyncio
async def test_create_persists_pending_job(store, clock):
    job = await store.create([70000, 70001], trace_id=TRACE, max_attempts=3, idempotency_key="k1")

    loaded = await store.get(job.id)
    assert loaded.status == JobStatus.PENDING.value
    assert loaded.file_ids == [70000, 70001]
    assert loaded.progress_current == 0
    assert loaded.progress_total == 2
    assert loaded.attempt_count == 0
    assert loaded.version == 1
    assert loaded.created_at == clock()
    assert loaded.trace_id == TRACE


@pytest.mark.asyncio
async def test_duplicate_idempotency_key_is_rejected(store):
    await store.create([70000], trace_id=TRACE, max_attempts=3, idempotency_key="dup")
    with pytest.raises(IntegrityError):
        await store.create([70001], trace_id=TRACE, max_attempts=3, idempotency_key="dup")

    found = await store.get_by_idempotency_key("dup")
    assert found.file_ids == [70000]


@pytest.mark.asyncio
async def test_get_unknown_job_returns_none(store):
    assert await store.get(uuid.uuid4()) is None


@pytest.mark.asyncio
async def test_begin_attempt_moves_to_processing(store):
    job = await _processing(store)

    assert job.status == JobStatus.PROCESSING.value
    assert job.claimed_by == "worker-a"
    assert job.lease_token == "token-a"
    assert job.attempt_count == 1
    assert job.version == 2


@pytest.mark.asyncio
async def test_redelivery_counts_another_attempt(store):
    job = await _processing(store)
    job = await store.begin_attempt(job.id, "worker-b", "token-b")

    assert job.status == JobStatus.PROCESSING.value
    assert job.claimed_by == "worker-b"
    assert job.attempt_count == 2


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_capped(store):
    job = await _processing(store)

    job = await store.update_progress(job.id, "token-a", 2)
    assert job.progress_current == 2
    job = await store.update_progress(job.id, "token-a", 1)
    assert job.progress_current == 2
    job = await store.update_progress(job.id, "token-a", 99)
    assert job.progress_current == job.progress_total == 2


@pytest.mark.asyncio
async def test_complete_records_result(store, clock):
    job = await _processing(store)
    expires_at = clock() + timedelta(minutes=15)

    job = await store.complete(
        job.id,
        "token-a",
        access_url="http://files.test/a.zip",
        expires_at=expires_at,
        artifact_ref="jobs/a.zip",
    )

    assert job.status == JobStatus.COMPLETED.value
    assert job.result == {"access_url": "http://files.test/a.zip", "expires_at": expires_at.isoformat()}
    assert job.progress_current == 2
    assert job.finished_at == clock()
    assert job.lease_token is None


@pytest.mark.asyncio
async def test_terminal_job_rejects_every_transition(store):
    job = await _processing(store)
    job = await store.fail(job.id, ErrorKind.FATAL_RETRIEVAL, "gone", lease_token="token-a")

    with pytest.raises(Conflict):
        await store.cancel(job.id)
    with pytest.raises(Conflict):
        await store.fail(job.id, ErrorKind.TIMEOUT, "late")
    with pytest.raises(Conflict):
        await store.begin_attempt(job.id, "worker-b", "token-b")

    loaded = await store.get(job.id)
    assert loaded.status == JobStatus.FAILED.value
    assert loaded.error_kind == ErrorKind.FATAL_RETRIEVAL.value
    assert loaded.error_message == "gone"


@pytest.mark.asyncio
async def test_stale_version_write_loses(store):
    job = await _processing(store)
    observed = job.version

    await store.heartbeat(job.id, "token-a")

    with pytest.raises(Conflict):
        await store.fail(job.id, ErrorKind.TIMEOUT, "stalled", expected_version=observed)
    assert (await store.get(job.id)).status == JobStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_zombie_worker_writes_are_rejected(store):
    job = await _processing(store, worker="worker-a", token="token-a")
    # lease expired and the item was redelivered
    await store.begin_attempt(job.id, "worker-b", "token-b")

    with pytest.raises(LeaseLost):
        await store.update_progress(job.id, "token-a", 1)
    with pytest.raises(LeaseLost):
        await store.heartbeat(job.id, "token-a")
    with pytest.raises(LeaseLost):
        await store.complete(
            job.id, "token-a", access_url="x", expires_at=job.updated_at, artifact_ref="jobs/x.zip"
        )

    done = await store.complete(
        job.id, "token-b", access_url="http://files.test/b.zip", expires_at=job.updated_at, artifact_ref="jobs/b.zip"
    )
    assert done.status == JobStatus.COMPLETED.value
    assert done.result["access_url"] == "http://files.test/b.zip"


@pytest.mark.asyncio
async def test_cancel_is_seen_at_checkpoint(store):
    job = await _processing(store)
    cancelled = await store.cancel(job.id)

    assert cancelled.status == JobStatus.CANCELLED.value
    assert cancelled.finished_at is not None
    with pytest.raises(JobCancelled):
        await store.checkpoint(job.id, "token-a")
    with pytest.raises(JobCancelled):
        await store.complete(job.id, "token-a", access_url="x", expires_at=job.updated_at, artifact_ref="x")


@pytest.mark.asyncio
async def test_cancel_survives_heartbeat_between_read_and_write(store, monkeypatch):
    job = await _processing(store)
    real_load = store._load
    heartbeats = []
    interleaving = False

    async def load_then_heartbeat(db, job_id):
        nonlocal interleaving
        loaded = await real_load(db, job_id)
        if not interleaving:
            interleaving = True
            heartbeats.append(await store.heartbeat(job_id, "token-a"))
        return loaded

    monkeypatch.setattr(store, "_load", load_then_heartbeat)
    cancelled = await store.cancel(job.id)

    assert heartbeats[0].version == job.version + 1
    assert cancelled.status == JobStatus.CANCELLED.value
    assert cancelled.version == job.version + 2
    assert cancelled.lease_token is None


@pytest.mark.asyncio
async def test_cancel_gives_up_when_job_never_settles(store, monkeypatch):
    job = await _processing(store)
    real_load = store._load
    interleaving = False

    async def load_then_heartbeat(db, job_id):
        nonlocal interleaving
        loaded = await real_load(db, job_id)
        if not interleaving:
            interleaving = True
            await store.heartbeat(job_id, "token-a")
            interleaving = False
        return loaded

    monkeypatch.setattr(store, "_load", load_then_heartbeat)
    with pytest.raises(Conflict):
        await store.cancel(job.id)

    assert (await store.get(job.id)).status == JobStatus.PROCESSING.value


@pytest.mark.asyncio
async def test_release_for_retry_drops_lease(store):
    job = await _processing(store)
    job = await store.release_for_retry(job.id, "token-a", reason="upstream timeout")

    assert job.status == JobStatus.PROCESSING.value
    assert job.lease_token is None
    assert job.claimed_by is None
    with pytest.raises(LeaseLost):
        await store.checkpoint(job.id, "token-a")


@pytest.mark.asyncio
async def test_heartbeat_touches_updated_at(store, clock):
    job = await _processing(store)
    clock.advance(45)

    job = await store.heartbeat(job.id, "token-a")
    assert job.updated_at == clock()


@pytest.mark.asyncio
async def test_missing_job_raises_not_found(store):
    with pytest.raises(NotFound):
        await store.cancel(uuid.uuid4())


@pytest.mark.asyncio
async def test_listing_stalled_expired_and_orphaned(store, queue, clock):
    orphan = await store.create([70000], trace_id=TRACE, max_attempts=3)
    queued = await store.create([70001], trace_id=TRACE, max_attempts=3)
    await queue.enqueue(queued.id)
    stalled = await _processing(store, file_ids=(70002,))
    done = await _processing(store, token="token-d", file_ids=(70003,))
    released = await _processing(store, token="token-r", file_ids=(70004,))
    await store.release_for_retry(released.id, "token-r", reason="upstream timeout")
    await store.cancel(done.id)

    clock.advance(600)
    cutoff = clock() - timedelta(seconds=60)

    assert [j.id for j in await store.list_orphaned(cutoff)] == [orphan.id]
    assert [j.id for j in await store.list_stalled(cutoff)] == [stalled.id]
    assert [j.id for j in await store.list_expired(cutoff)] == [done.id]


@pytest.mark.asyncio
async def test_purge_removes_job_and_queue_entry(store, queue):
    job = await store.create([70000], trace_id=TRACE, max_attempts=3)
    await queue.enqueue(job.id)
    job = await store.cancel(job.id)

    await store.purge(job.id, job.version)

    assert await store.get(job.id) is None
    assert await queue.get(job.id) is None


@pytest.mark.asyncio
async def test_lifecycle_leaves_event_trail(store, session_factory, clock):
    job = await _processing(store)
    clock.advance(1)
    await store.release_for_retry(job.id, "token-a", reason="flaky")
    clock.advance(1)
    await store.begin_attempt(job.id, "worker-b", "token-b")
    clock.advance(1)
    await store.complete(job.id, "token-b", access_url="x", expires_at=clock(), artifact_ref="x")

    assert await _events(session_factory) == [
        "job_created",
        "job_processing",
        "job_retry",
        "job_redelivered",
        "job_completed",
    ]
