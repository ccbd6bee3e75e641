# jobs/errors.py
"""
Error taxonomy for the job orchestration core.

InvalidInput / NotFound / Conflict are surfaced to clients.
Retrieval errors stay inside the worker pool; clients only ever see
a failed job with a coarse message.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    FATAL_RETRIEVAL = "fatal_retrieval"
    TIMEOUT = "timeout"
    ENQUEUE_ERROR = "enqueue_error"


class JobError(Exception):
    """Base class for orchestration errors."""

    def __init__(self, message: str = "", *, trace_id: str | None = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        self.trace_id = trace_id


class InvalidInput(JobError):
    pass


class NotFound(JobError):
    pass


class Conflict(JobError):
    """Illegal state transition or a lost compare-and-swap."""


class StaleWrite(Conflict):
    """A version compare-and-swap lost to a concurrent write."""


class LeaseLost(Conflict):
    """The caller's lease on a job was reassigned or the job left processing."""


class JobCancelled(Conflict):
    """Raised at a worker checkpoint once the job was cancelled."""


class RetrievalError(JobError):
    retryable = False
    kind = ErrorKind.FATAL_RETRIEVAL


class RetryableRetrievalError(RetrievalError):
    retryable = True


class FatalRetrievalError(RetrievalError):
    retryable = False


class JobTimeout(JobError):
    """Stall detected by the sweeper; never raised inside a worker."""

    kind = ErrorKind.TIMEOUT


class EnqueueError(JobError):
    kind = ErrorKind.ENQUEUE_ERROR
