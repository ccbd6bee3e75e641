# api/app/dependencies.py
from __future__ import annotations

from collections.abc import AsyncGenerator
from functools import lru_cache

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.config import get_settings
from db.session import get_db, get_session_factory
from jobs.manager import JobManager
from jobs.queue import JobQueue
from jobs.store import JobStore
from services.notifier import JobNotifier
from services.observability import trace_id_from_headers
from services.retrieval import FileRetriever, SimulatedFileRetriever
from services.storage import LocalArtifactStorage, StorageClient


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_db():
        yield session


def get_trace_id(request: Request) -> str:
    """Trace id set by RequestLoggingMiddleware, or one derived from headers."""
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id is None:
        trace_id = trace_id_from_headers(request.headers)
        request.state.trace_id = trace_id
    return trace_id


@lru_cache
def get_storage() -> StorageClient:
    settings = get_settings()
    return LocalArtifactStorage(
        base_dir=settings.artifact_dir,
        base_url=settings.storage_base_url,
        signing_secret=settings.storage_signing_secret,
        link_ttl_seconds=settings.access_link_ttl_seconds,
    )


@lru_cache
def get_retriever() -> FileRetriever:
    settings = get_settings()
    return SimulatedFileRetriever(
        delay_min=settings.retrieval_delay_min,
        delay_max=settings.retrieval_delay_max,
        transient_failure_rate=settings.retrieval_transient_failure_rate,
    )


@lru_cache
def get_notifier() -> JobNotifier:
    return JobNotifier(timeout_seconds=get_settings().notification_timeout_seconds)


@lru_cache
def get_job_store() -> JobStore:
    return JobStore(get_session_factory())


@lru_cache
def get_job_queue() -> JobQueue:
    return JobQueue(get_session_factory(), lease_seconds=get_settings().lease_seconds)


def get_job_manager() -> JobManager:
    return JobManager(
        store=get_job_store(),
        queue=get_job_queue(),
        settings=get_settings(),
        storage=get_storage(),
        retriever=get_retriever(),
        notifier=get_notifier(),
    )
