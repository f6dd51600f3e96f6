"""Gekto engine: assistant sessions, agent pool and persistent planner."""
from .models import (
    MASTER_ID,
    ExecutionPlan,
    PlanOutcome,
    PlannerCallbacks,
    PlannerMode,
    PlannerResult,
    PlannerState,
    PlanStatus,
    SessionSnapshot,
    SessionState,
    Task,
    TaskStatus,
)
from .config import GektoConfig
from .errors import (
    GektoError,
    PlannerError,
    PlannerUnavailableError,
    ProtocolError,
    SessionSpawnError,
)
from .classifier import OutputClassifier, OutputSignal, PromptPatternClassifier
from .session import Session
from .planner import PersistentPlanner
from .pool import AgentPool

__all__ = [
    # Models
    "MASTER_ID",
    "ExecutionPlan",
    "PlanOutcome",
    "PlannerCallbacks",
    "PlannerMode",
    "PlannerResult",
    "PlannerState",
    "PlanStatus",
    "SessionSnapshot",
    "SessionState",
    "Task",
    "TaskStatus",
    # Config
    "GektoConfig",
    # Errors
    "GektoError",
    "PlannerError",
    "PlannerUnavailableError",
    "ProtocolError",
    "SessionSpawnError",
    # Sessions
    "OutputClassifier",
    "OutputSignal",
    "PromptPatternClassifier",
    "Session",
    "PersistentPlanner",
    "AgentPool",
]
