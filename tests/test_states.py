# tests/test_states.py
from __future__ import annotations

import pytest

from jobs.errors import Conflict
from jobs.states import TERMINAL_STATES, JobStatus, ensure_transition, is_terminal


@pytest.mark.parametrize(
    "current,target",
    [
        ("pending", "processing"),
        ("pending", "cancelled"),
        ("pending", "failed"),
        ("processing", "completed"),
        ("processing", "failed"),
        ("processing", "cancelled"),
    ],
)
def test_legal_transitions(current, target):
    ensure_transition(current, target)


@pytest.mark.parametrize("terminal", sorted(s.value for s in TERMINAL_STATES))
@pytest.mark.parametrize("target", [s.value for s in JobStatus])
def test_terminal_states_are_final(terminal, target):
    with pytest.raises(Conflict):
        ensure_transition(terminal, target)


def test_pending_cannot_skip_to_completed():
    with pytest.raises(Conflict):
        ensure_transition(JobStatus.PENDING, JobStatus.COMPLETED)


def test_processing_cannot_go_back_to_pending():
    with pytest.raises(Conflict):
        ensure_transition(JobStatus.PROCESSING, JobStatus.PENDING)


def test_is_terminal():
    assert is_terminal("completed")
    assert JobStatus.CANCELLED.is_terminal
    assert not is_terminal(JobStatus.PROCESSING)
    with pytest.raises(ValueError):
        is_terminal("bogus")
