# api/app/routes/health.py
from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.app.dependencies import get_job_queue, get_session, get_storage
from jobs.queue import JobQueue
from services.storage import StorageClient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(
    db: AsyncSession = Depends(get_session),
    queue: JobQueue = Depends(get_job_queue),
    storage: StorageClient = Depends(get_storage),
):
    checks = {"database": True, "storage": True}
    queue_depth = None
    try:
        await db.execute(text("SELECT 1"))
        queue_depth = await queue.depth()
    except SQLAlchemyError as exc:
        logger.warning("Health check: database unavailable: %s", exc)
        checks["database"] = False

    if not await storage.check_connection():
        logger.warning("Health check: artifact storage unavailable")
        checks["storage"] = False

    healthy = all(checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "service": "download-jobs",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": checks,
            "queue_depth": queue_depth,
        },
    )
