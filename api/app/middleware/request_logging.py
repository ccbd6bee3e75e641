# api/app/middleware/request_logging.py
"""
Request-level logging with trace-id propagation.
The trace id is echoed back so clients can quote it when reporting issues.
"""
from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from services.observability import TRACE_HEADER, current_trace_id, trace_id_from_headers

logger = logging.getLogger(__name__)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id = trace_id_from_headers(request.headers)
        request.state.trace_id = trace_id
        token = current_trace_id.set(trace_id)
        t0 = time.monotonic()
        try:
            response = await call_next(request)
        finally:
            current_trace_id.reset(token)
        elapsed = (time.monotonic() - t0) * 1000
        response.headers[TRACE_HEADER] = trace_id
        logger.info(
            "%s %s → %d (%.0fms) trace=%s",
            request.method, request.url.path, response.status_code, elapsed, trace_id,
        )
        return response
