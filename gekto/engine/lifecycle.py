"""Session lifecycle state machine.

Session states are driven by heuristics over terminal output, so the
session itself ignores transitions this table rejects instead of
raising. validate_transition() is the strict form for callers that
want an exception.

State Diagram:

    LOADING ──> READY ──> WORKING ──┬──> READY
                  │                 │
                  │                 └──> WAITING_INPUT ──> WORKING
                  │
                  └──> WAITING_INPUT

    Any state ──> ERROR  (process exit; terminal)
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.LOADING: {
        SessionState.READY,
        SessionState.WAITING_INPUT,
        SessionState.ERROR,
    },
    SessionState.READY: {
        SessionState.WORKING,
        SessionState.WAITING_INPUT,
        SessionState.COMPLETED,
        SessionState.ERROR,
    },
    SessionState.WORKING: {
        SessionState.READY,
        SessionState.WAITING_INPUT,
        SessionState.COMPLETED,
        SessionState.ERROR,
    },
    SessionState.WAITING_INPUT: {
        SessionState.WORKING,
        SessionState.READY,
        SessionState.ERROR,
    },
    SessionState.COMPLETED: {
        SessionState.READY,
        SessionState.WORKING,
        SessionState.ERROR,
    },
    SessionState.ERROR: set(),
}


def is_valid_transition(current: SessionState, target: SessionState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(
    session_id: str,
    current: SessionState,
    target: SessionState,
) -> None:
    """Raise ValueError if the transition is not allowed."""
    if not is_valid_transition(current, target):
        raise ValueError(
            f"Invalid state transition for session {session_id}: "
            f"{current.value} -> {target.value}"
        )
