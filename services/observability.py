# services/observability.py
"""
Structured event logging to the events table, plus trace-id helpers.

Every job carries a correlation id so external tracing tools can stitch
its lifecycle together without this codebase importing a tracing SDK.
"""
from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Mapping
from contextvars import ContextVar

from sqlalchemy.ext.asyncio import AsyncSession

from models.event import Event

logger = logging.getLogger(__name__)

TRACE_HEADER = "X-Trace-Id"

_TRACEPARENT_RE = re.compile(r"^[0-9a-f]{2}-([0-9a-f]{32})-[0-9a-f]{16}-[0-9a-f]{2}$")
_TRACE_ID_RE = re.compile(r"^[0-9a-fA-F]{32}$")

current_trace_id: ContextVar[str | None] = ContextVar("current_trace_id", default=None)


def new_trace_id() -> str:
    return uuid.uuid4().hex


def trace_id_from_headers(headers: Mapping[str, str]) -> str:
    """Reuse an incoming W3C traceparent or X-Trace-Id, else mint a new id."""
    traceparent = (headers.get("traceparent") or "").strip().lower()
    m = _TRACEPARENT_RE.match(traceparent)
    if m and m.group(1) != "0" * 32:
        return m.group(1)

    explicit = (headers.get(TRACE_HEADER) or headers.get(TRACE_HEADER.lower()) or "").strip()
    if _TRACE_ID_RE.match(explicit):
        return explicit.lower()

    return new_trace_id()


async def log_event(
    db: AsyncSession,
    event_type: str,
    level: str = "info",
    source: str | None = None,
    message: str | None = None,
    metadata: dict | None = None,
    trace_id: str | None = None,
) -> Event:
    """Persist a structured event log entry."""
    event = Event(
        event_type=event_type,
        level=level,
        source=source,
        trace_id=trace_id,
        message=message,
        metadata_=metadata,
    )
    db.add(event)
    await db.flush()
    logger.log(
        getattr(logging, level.upper(), logging.INFO),
        "[%s] %s — %s trace=%s",
        event_type,
        message or "",
        metadata or {},
        trace_id,
    )
    return event
