# tests/test_retrieval.py
from __future__ import annotations

import io
import random
import uuid
import zipfile

import pytest

from jobs.errors import FatalRetrievalError, RetryableRetrievalError
from services.retrieval import SimulatedFileRetriever, artifact_ref_for


@pytest.fixture
def simulated() -> SimulatedFileRetriever:
    return SimulatedFileRetriever(delay_min=0, delay_max=0, rng=random.Random(7))


@pytest.mark.asyncio
async def test_check_reports_size(simulated):
    availability = await simulated.check(70000)
    assert availability.available
    retrieved = await simulated.retrieve(70000)
    assert availability.estimated_size == len(retrieved.data)


@pytest.mark.asyncio
async def test_unknown_file_is_fatal(simulated):
    assert not (await simulated.check(0)).available
    with pytest.raises(FatalRetrievalError):
        await simulated.retrieve(0)


@pytest.mark.asyncio
async def test_transient_failures_are_retryable():
    flaky = SimulatedFileRetriever(delay_min=0, delay_max=0, transient_failure_rate=1.0)
    with pytest.raises(RetryableRetrievalError) as info:
        await flaky.retrieve(70000)
    assert info.value.retryable


@pytest.mark.asyncio
async def test_package_writes_zip_artifact(simulated, storage):
    job_id = uuid.uuid4()
    files = [await simulated.retrieve(70000), await simulated.retrieve(70001)]

    ref = await simulated.package(job_id, files, storage)

    assert ref == artifact_ref_for(job_id)
    data = (storage._base_dir / ref).read_bytes()
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert sorted(zf.namelist()) == ["file-70000.bin", "file-70001.bin"]
