# tests/conftest.py
from __future__ import annotations

import asyncio
import os
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from api.app.config import Settings  # noqa: E402
from db.session import make_session_factory  # noqa: E402
from jobs.manager import JobManager  # noqa: E402
from jobs.queue import JobQueue  # noqa: E402
from jobs.store import JobStore  # noqa: E402
from jobs.sweeper import ExpirySweeper  # noqa: E402
from jobs.worker_pool import WorkerPool  # noqa: E402
from models import Base  # noqa: E402
from services.retrieval import FileAvailability, FileRetriever, RetrievedFile, artifact_ref_for  # noqa: E402
from services.storage import LocalArtifactStorage, StorageClient  # noqa: E402


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ScriptedRetriever(FileRetriever):
    """
    Retriever driven by the test: `outcomes` is consumed one entry per
    retrieve() call (an exception instance to raise, or None for success).
    Set `gated=True` to make each retrieve wait for `release(file_id)`.
    """

    def __init__(self):
        self.outcomes: list[Exception | None] = []
        self.calls: list[int] = []
        self.gated = False
        self.started: dict[int, asyncio.Event] = {}
        self.released: dict[int, asyncio.Event] = {}
        self.on_retrieve = None

    def _event(self, table: dict[int, asyncio.Event], file_id: int) -> asyncio.Event:
        return table.setdefault(file_id, asyncio.Event())

    def release(self, file_id: int) -> None:
        self._event(self.released, file_id).set()

    async def wait_started(self, file_id: int) -> None:
        await asyncio.wait_for(self._event(self.started, file_id).wait(), timeout=5)

    async def check(self, file_id: int) -> FileAvailability:
        return FileAvailability(file_id=file_id, available=True, estimated_size=1024)

    async def retrieve(self, file_id: int) -> RetrievedFile:
        self.calls.append(file_id)
        self._event(self.started, file_id).set()
        if self.gated:
            await self._event(self.released, file_id).wait()
        if self.on_retrieve is not None:
            await self.on_retrieve(file_id)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome
        return RetrievedFile(file_id=file_id, name=f"file-{file_id}.bin", data=b"x" * 16)

    async def package(self, job_id: uuid.UUID, files: list[RetrievedFile], storage: StorageClient) -> str:
        ref = artifact_ref_for(job_id)
        await storage.write_artifact(ref, b"".join(f.data for f in files))
        return ref


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}",
        storage_dir=str(tmp_path / "artifacts"),
        storage_base_url="http://files.test/artifacts",
        storage_signing_secret="test-secret",
        access_link_ttl_seconds=900,
        max_file_ids=10,
        job_max_attempts=3,
        lease_seconds=30,
        stall_threshold_seconds=120,
        retention_seconds=3600,
        orphan_grace_seconds=60,
        sweep_interval_seconds=0.05,
        enqueue_max_attempts=3,
        enqueue_retry_delay=0,
        worker_pool_size=2,
        worker_poll_interval=0.01,
        worker_poll_max_interval=0.05,
        retrieval_delay_min=0,
        retrieval_delay_max=0,
    )


@pytest_asyncio.fixture
async def session_factory(settings):
    engine = create_async_engine(settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory, clock) -> JobStore:
    return JobStore(session_factory, clock=clock)


@pytest.fixture
def queue(session_factory, clock, settings) -> JobQueue:
    return JobQueue(session_factory, clock=clock, lease_seconds=settings.lease_seconds)


@pytest.fixture
def storage(settings, clock) -> LocalArtifactStorage:
    return LocalArtifactStorage(
        base_dir=settings.storage_dir,
        base_url=settings.storage_base_url,
        signing_secret=settings.storage_signing_secret,
        link_ttl_seconds=settings.access_link_ttl_seconds,
        clock=clock,
    )


@pytest.fixture
def retriever() -> ScriptedRetriever:
    return ScriptedRetriever()


@pytest.fixture
def manager(store, queue, settings, storage, retriever, clock) -> JobManager:
    return JobManager(
        store=store,
        queue=queue,
        settings=settings,
        storage=storage,
        retriever=retriever,
        sleep=AsyncMock(),
        clock=clock,
    )


@pytest.fixture
def pool(queue, store, retriever, storage, settings) -> WorkerPool:
    return WorkerPool(
        queue=queue,
        store=store,
        retriever=retriever,
        storage=storage,
        settings=settings,
        prefix="test-worker",
    )


@pytest.fixture
def sweeper(store, queue, storage, settings, clock) -> ExpirySweeper:
    return ExpirySweeper(store=store, queue=queue, storage=storage, settings=settings, clock=clock)
