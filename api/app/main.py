# api/app/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.app.config import get_settings
from api.app.dependencies import (
    get_job_queue,
    get_job_store,
    get_notifier,
    get_retriever,
    get_storage,
    get_trace_id,
)
from api.app.middleware.request_logging import RequestLoggingMiddleware
from api.app.routes import health
from api.app.routes import jobs as jobs_api
from db.engine import dispose_engine
from jobs.errors import Conflict, InvalidInput, JobError, NotFound
from jobs.sweeper import ExpirySweeper
from jobs.worker_pool import WorkerPool

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    InvalidInput: 400,
    NotFound: 404,
    Conflict: 409,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Optionally run workers and the sweeper inside the API process."""
    settings = get_settings()
    pool = sweeper = None

    if settings.embedded_workers:
        pool = WorkerPool(
            queue=get_job_queue(),
            store=get_job_store(),
            retriever=get_retriever(),
            storage=get_storage(),
            settings=settings,
            notifier=get_notifier(),
        )
        sweeper = ExpirySweeper(
            store=get_job_store(),
            queue=get_job_queue(),
            storage=get_storage(),
            settings=settings,
            notifier=get_notifier(),
        )
        await pool.start()
        await sweeper.start()

    yield

    if sweeper is not None:
        await sweeper.stop()
    if pool is not None:
        await pool.stop()
    await dispose_engine()


app = FastAPI(
    title="Download Jobs API",
    description="Asynchronous file-download job orchestration",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Trace-Id"],
)
app.add_middleware(RequestLoggingMiddleware)


def _error_body(name: str, message: str, trace_id: str | None) -> dict:
    return {"error": name, "message": message, "trace_id": trace_id}


@app.exception_handler(JobError)
async def job_error_handler(request: Request, exc: JobError) -> JSONResponse:
    status_code = next(
        (code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)),
        500,
    )
    trace_id = exc.trace_id or get_trace_id(request)
    if status_code == 500:
        logger.error("Unhandled job error on %s: %s trace=%s", request.url.path, exc, trace_id)
        return JSONResponse(
            status_code=500,
            content=_error_body("InternalError", "Internal server error", trace_id),
        )
    name = next(cls.__name__ for cls in ERROR_STATUS if isinstance(exc, cls))
    return JSONResponse(status_code=status_code, content=_error_body(name, exc.message, trace_id))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    first = exc.errors()[0] if exc.errors() else {}
    if first.get("loc", ("",))[0] == "path":
        # a malformed id can never name an existing job
        return JSONResponse(
            status_code=404,
            content=_error_body("NotFound", "Job not found", get_trace_id(request)),
        )
    location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"{location}: {first.get('msg', 'invalid request')}" if location else "Invalid request"
    return JSONResponse(
        status_code=400,
        content=_error_body("InvalidInput", message, get_trace_id(request)),
    )


app.include_router(health.router)
app.include_router(jobs_api.router, prefix="/v1")
