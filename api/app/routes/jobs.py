# api/app/routes/jobs.py
from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Header, status

from api.app.dependencies import get_job_manager, get_trace_id
from api.app.schemas.jobs import (
    FileCheckRequest,
    FileCheckResponse,
    JobCreateRequest,
    JobCreateResponse,
    JobResponse,
)
from jobs.manager import JobManager

router = APIRouter(tags=["jobs"])


@router.post("/jobs", response_model=JobCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_job(
    body: JobCreateRequest,
    trace_id: str = Depends(get_trace_id),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
    manager: JobManager = Depends(get_job_manager),
):
    """
    Queue a download job. Retrying with the same idempotency key
    returns the original job instead of creating another.
    """
    job = await manager.create_job(
        body.file_ids,
        body.idempotency_key or idempotency_key,
        trace_id=trace_id,
        notification_url=body.notification_url,
    )
    return JobCreateResponse(
        job_id=job.id,
        status=job.status,
        file_count=len(job.file_ids),
        trace_id=job.trace_id,
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: uuid.UUID,
    manager: JobManager = Depends(get_job_manager),
):
    """Poll a job. Never waits for the job to finish."""
    job = await manager.get_status(job_id)
    return JobResponse.from_job(job)


@router.post("/jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: uuid.UUID,
    manager: JobManager = Depends(get_job_manager),
):
    job = await manager.cancel_job(job_id)
    return JobResponse.from_job(job)


@router.post("/files/check", response_model=FileCheckResponse)
async def check_file(
    body: FileCheckRequest,
    trace_id: str = Depends(get_trace_id),
    manager: JobManager = Depends(get_job_manager),
):
    availability = await manager.check_file(body.file_id, trace_id=trace_id)
    return FileCheckResponse(
        file_id=availability.file_id,
        status="available" if availability.available else "unavailable",
        estimated_size=availability.estimated_size,
        message="File is ready for download" if availability.available else "File not found",
    )
