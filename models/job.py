# models/job.py
from __future__ import annotations

from datetime import datetime

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.base import JSONType, Base, TimestampMixin, UTCDateTime, UUIDPrimaryKey


class Job(Base, UUIDPrimaryKey, TimestampMixin):
    __tablename__ = "jobs"

    # pending | processing | completed | failed | cancelled
    status: Mapped[str] = mapped_column(String(32), default="pending", index=True)
    file_ids: Mapped[list] = mapped_column(JSONType, nullable=False)

    progress_current: Mapped[int] = mapped_column(Integer, default=0)
    progress_total: Mapped[int] = mapped_column(Integer, default=0)

    # {access_url, expires_at}, completed only
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    # failed only
    error_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    artifact_ref: Mapped[str | None] = mapped_column(String(512), nullable=True)

    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)

    idempotency_key: Mapped[str | None] = mapped_column(String(128), unique=True, nullable=True)
    trace_id: Mapped[str] = mapped_column(String(32), nullable=False)
    notification_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)

    finished_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    # compare-and-swap counter, bumped on every write
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
