"""Exception hierarchy for the Gekto engine.

One exception per failure mode. Process failures never escape past
the pool or planner boundary; they become state changes and replies.
"""
from __future__ import annotations


class GektoError(Exception):
    """Base exception for all Gekto errors."""


class SessionSpawnError(GektoError):
    """Failed to create or start an assistant session."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Failed to spawn session {session_id}: {reason}")


class ProtocolError(GektoError):
    """A client message could not be parsed or validated."""
    def __init__(self, message: str, msg_type: str | None = None):
        self.msg_type = msg_type
        super().__init__(message)


class PlannerError(GektoError):
    """The planner process failed during a turn."""


class PlannerUnavailableError(PlannerError):
    """The planner process is not ready to accept a turn."""
    def __init__(self, state: str):
        self.state = state
        super().__init__(f"Planner is not ready (state={state})")
