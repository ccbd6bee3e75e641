# services/retrieval.py
"""
File-retrieval collaborator.

The orchestration core only schedules and tracks retrieval work; the
retriever does the slow part and raises RetryableRetrievalError or
FatalRetrievalError so the worker pool can decide between Nack and fail.
"""
from __future__ import annotations

import asyncio
import io
import logging
import random
import uuid
import zipfile
from abc import ABC, abstractmethod
from dataclasses import dataclass

from jobs.errors import FatalRetrievalError, RetryableRetrievalError
from services.storage import StorageClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileAvailability:
    file_id: int
    available: bool
    estimated_size: int | None = None


@dataclass(frozen=True)
class RetrievedFile:
    file_id: int
    name: str
    data: bytes


class FileRetriever(ABC):
    @abstractmethod
    async def check(self, file_id: int) -> FileAvailability:
        ...

    @abstractmethod
    async def retrieve(self, file_id: int) -> RetrievedFile:
        ...

    @abstractmethod
    async def package(
        self,
        job_id: uuid.UUID,
        files: list[RetrievedFile],
        storage: StorageClient,
    ) -> str:
        """Bundle retrieved files into one artifact; returns its ref."""
        ...


def artifact_ref_for(job_id: uuid.UUID) -> str:
    return f"jobs/{job_id}.zip"


class SimulatedFileRetriever(FileRetriever):
    """
    Stand-in for the upstream file source.

    Every id in range is downloadable; each download takes a random
    delay and may fail transiently at the configured rate.
    """

    def __init__(
        self,
        delay_min: float = 0.5,
        delay_max: float = 2.0,
        transient_failure_rate: float = 0.0,
        rng: random.Random | None = None,
    ):
        self._delay_min = delay_min
        self._delay_max = max(delay_min, delay_max)
        self._failure_rate = transient_failure_rate
        self._rng = rng or random.Random()

    @staticmethod
    def _size_for(file_id: int) -> int:
        # deterministic size so check() and retrieve() agree
        return 1024 + (file_id * 7919) % 65536

    async def check(self, file_id: int) -> FileAvailability:
        if file_id <= 0:
            return FileAvailability(file_id=file_id, available=False)
        return FileAvailability(file_id=file_id, available=True, estimated_size=self._size_for(file_id))

    async def retrieve(self, file_id: int) -> RetrievedFile:
        availability = await self.check(file_id)
        if not availability.available:
            raise FatalRetrievalError(f"File {file_id} does not exist")

        await asyncio.sleep(self._rng.uniform(self._delay_min, self._delay_max))

        if self._rng.random() < self._failure_rate:
            raise RetryableRetrievalError(f"Upstream timeout fetching file {file_id}")

        line = f"file {file_id}\n".encode("utf-8")
        data = (line * (self._size_for(file_id) // len(line) + 1))[: self._size_for(file_id)]
        logger.debug("Retrieved file %s (%d bytes)", file_id, len(data))
        return RetrievedFile(file_id=file_id, name=f"file-{file_id}.bin", data=data)

    async def package(
        self,
        job_id: uuid.UUID,
        files: list[RetrievedFile],
        storage: StorageClient,
    ) -> str:
        def _zip() -> bytes:
            buf = io.BytesIO()
            with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                for f in files:
                    zf.writestr(f.name, f.data)
            return buf.getvalue()

        data = await asyncio.to_thread(_zip)
        ref = artifact_ref_for(job_id)
        await storage.write_artifact(ref, data)
        return ref
