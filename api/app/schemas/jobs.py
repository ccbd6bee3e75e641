# api/app/schemas/jobs.py
from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import BaseModel, Field

from models.job import Job


class JobCreateRequest(BaseModel):
    file_ids: list[int]
    idempotency_key: str | None = Field(default=None, max_length=128)
    notification_url: str | None = Field(default=None, max_length=2048)


class JobCreateResponse(BaseModel):
    job_id: uuid.UUID
    status: str
    file_count: int
    trace_id: str


class Progress(BaseModel):
    current: int
    total: int


class JobResult(BaseModel):
    access_url: str
    expires_at: datetime


class JobErrorDetail(BaseModel):
    kind: str
    message: str


class JobResponse(BaseModel):
    job_id: uuid.UUID
    status: str
    file_ids: list[int]
    progress: Progress
    result: JobResult | None = None
    error: JobErrorDetail | None = None
    created_at: datetime
    updated_at: datetime
    trace_id: str

    @classmethod
    def from_job(cls, job: Job) -> JobResponse:
        return cls(
            job_id=job.id,
            status=job.status,
            file_ids=job.file_ids,
            progress=Progress(current=job.progress_current, total=job.progress_total),
            result=JobResult(**job.result) if job.result else None,
            error=(
                JobErrorDetail(kind=job.error_kind, message=job.error_message or "")
                if job.error_kind
                else None
            ),
            created_at=job.created_at,
            updated_at=job.updated_at,
            trace_id=job.trace_id,
        )


class FileCheckRequest(BaseModel):
    file_id: int


class FileCheckResponse(BaseModel):
    file_id: int
    status: str  # available | unavailable
    estimated_size: int | None = None
    message: str


class ErrorResponse(BaseModel):
    error: str
    message: str
    trace_id: str | None = None
