"""Core data models for the Gekto engine.

Enums and dataclasses shared by the session pool, the planner and the
control plane. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

# Session id reserved for the planner. Never allocated to a pool session.
MASTER_ID = "master"


class SessionState(str, Enum):
    """Session lifecycle states. See lifecycle.py for transition rules."""
    LOADING = "loading"
    READY = "ready"
    WORKING = "working"
    WAITING_INPUT = "waiting_input"
    COMPLETED = "completed"
    ERROR = "error"


class PlannerState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class PlannerMode(str, Enum):
    """How a planner request should be answered."""
    DIRECT = "direct"
    PLAN = "plan"


class PlanStatus(str, Enum):
    CREATED = "created"
    EXECUTING = "executing"
    FAILED = "failed"
    COMPLETED = "completed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Task:
    """One unit of work inside an ExecutionPlan."""
    id: str
    description: str
    prompt: str
    files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    assigned_session_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "description": self.description,
            "prompt": self.prompt,
            "files": list(self.files),
            "dependencies": list(self.dependencies),
            "status": self.status.value,
        }
        if self.assigned_session_id is not None:
            data["assignedLizardId"] = self.assigned_session_id
        return data


@dataclass
class ExecutionPlan:
    """Task breakdown produced by the planner for one request.

    Keyed by the ``planId`` the client supplied. The wire form uses
    camelCase keys because the browser widget consumes it directly.
    """
    id: str
    original_prompt: str
    tasks: list[Task] = field(default_factory=list)
    status: PlanStatus = PlanStatus.CREATED
    created_at: str = field(default_factory=_utcnow_iso)

    def get_task(self, task_id: str) -> Task | None:
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "originalPrompt": self.original_prompt,
            "createdAt": self.created_at,
            "tasks": [t.to_dict() for t in self.tasks],
        }


@dataclass
class SessionSnapshot:
    """Point-in-time view of one pool entry."""
    session_id: str
    state: SessionState
    is_processing: bool
    is_running: bool
    queue_length: int

    @property
    def queue_position(self) -> int:
        return self.queue_length

    def to_dict(self) -> dict[str, Any]:
        return {
            "lizardId": self.session_id,
            "state": self.state.value,
            "isProcessing": self.is_processing,
            "isRunning": self.is_running,
            "queueLength": self.queue_length,
            "queuePosition": self.queue_position,
        }


@dataclass
class PlannerResult:
    """Outcome of one PersistentPlanner.send() call."""
    mode: PlannerMode
    message: str
    classify_ms: int = 0
    work_ms: int = 0

    def timing(self) -> dict[str, int]:
        return {"classifyMs": self.classify_ms, "workMs": self.work_ms}


@dataclass
class PlanOutcome:
    """Result of resolving a plan-mode request.

    Exactly one of ``plan``, ``remove`` or ``message`` is meaningful,
    selected by ``kind`` ("plan", "remove" or "chat").
    """
    kind: str
    plan: ExecutionPlan | None = None
    remove: list[str] = field(default_factory=list)
    message: str = ""

    @classmethod
    def chat(cls, message: str) -> PlanOutcome:
        return cls(kind="chat", message=message)


@dataclass
class PlannerCallbacks:
    """Progress observers for a planner turn.

    ``on_tool_start`` / ``on_tool_end`` receive ``(tool_name, input)``;
    ``on_text`` receives streamed text fragments; ``on_classified``
    receives the mode chosen by triage.
    """
    on_tool_start: Callable[[str, dict[str, Any]], None] | None = None
    on_tool_end: Callable[[str, dict[str, Any]], None] | None = None
    on_text: Callable[[str], None] | None = None
    on_classified: Callable[[PlannerMode], None] | None = None
