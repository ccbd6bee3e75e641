# services/notifier.py
"""
Best-effort completion callbacks for jobs created with a notification_url.
Polling stays the source of truth; a lost callback is only logged.
"""
from __future__ import annotations

import logging

import httpx

from models.job import Job

logger = logging.getLogger(__name__)


class JobNotifier:
    def __init__(self, timeout_seconds: float = 5.0, transport: httpx.AsyncBaseTransport | None = None):
        self._timeout = timeout_seconds
        self._transport = transport

    async def notify(self, job: Job) -> bool:
        if not job.notification_url:
            return False

        payload = {
            "job_id": str(job.id),
            "status": job.status,
            "result": job.result,
            "error": {"kind": job.error_kind, "message": job.error_message} if job.error_kind else None,
        }
        headers = {"X-Trace-Id": job.trace_id, "X-Job-Event": f"job.{job.status}"}

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(job.notification_url, json=payload, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Notification for job %s to %s failed: %s trace=%s",
                job.id,
                job.notification_url,
                exc,
                job.trace_id,
            )
            return False

        logger.info("Notified %s for job %s [%s] trace=%s", job.notification_url, job.id, job.status, job.trace_id)
        return True
