# jobs/states.py
from __future__ import annotations

from enum import Enum

from jobs.errors import Conflict


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def is_terminal(status: str | JobStatus) -> bool:
    return JobStatus(status) in TERMINAL_STATES


def ensure_transition(current: str | JobStatus, target: str | JobStatus) -> None:
    """Raise Conflict unless current -> target is a legal move."""
    current, target = JobStatus(current), JobStatus(target)
    if current in TERMINAL_STATES:
        raise Conflict(f"Job is already {current.value}")
    if target not in TRANSITIONS[current]:
        raise Conflict(f"Cannot move job from {current.value} to {target.value}")
