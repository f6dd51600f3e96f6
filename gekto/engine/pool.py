"""Agent pool: id -> Session registry with per-session message queues.

The pool is the only writer of its maps and runs entirely on the
event loop. Session observers post events to the connection bound to
that session; rebinding happens on every command from a client and on
reconnect, so a refreshed browser picks its sessions back up.

Also holds the plan registry, because plans are created from and
executed against pool sessions.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from .classifier import extract_response
from .config import GektoConfig
from .errors import ProtocolError, SessionSpawnError
from .models import (
    MASTER_ID,
    ExecutionPlan,
    PlanOutcome,
    PlanStatus,
    SessionSnapshot,
    SessionState,
    TaskStatus,
)
from .plan_tools import plan_with_tools
from .session import Session

logger = logging.getLogger(__name__)

SessionFactory = Callable[..., Awaitable[Session]]
PlanResolver = Callable[
    [str, str, str, list[dict[str, Any]]], Awaitable[PlanOutcome]
]

# Tail of the buffer shown with a permission question.
_PERMISSION_CONTEXT_CHARS = 500


class EventSink(Protocol):
    """Anything that accepts outgoing protocol messages."""

    @property
    def is_open(self) -> bool: ...

    def post(self, message: dict[str, Any]) -> bool: ...


@dataclass
class _PoolEntry:
    session_id: str
    session: Session | None = None
    queue: deque[str] = field(default_factory=deque)
    connection: EventSink | None = None
    is_processing: bool = False
    # Set while a failed session's process is still being terminated.
    reaper: asyncio.Task | None = None


class AgentPool:
    """Owns every worker session. See module docstring."""

    def __init__(
        self,
        config: GektoConfig | None = None,
        *,
        session_factory: SessionFactory | None = None,
        plan_resolver: PlanResolver | None = None,
    ):
        self.config = config or GektoConfig()
        self._entries: dict[str, _PoolEntry] = {}
        self._plans: dict[str, ExecutionPlan] = {}
        self._session_factory = session_factory or Session.create
        self._plan_resolver = plan_resolver or self._resolve_plan_with_tools

    @property
    def working_dir(self) -> str:
        return self.config.working_dir

    # ── Messaging ───────────────────────────────────────────────

    async def send_message(
        self,
        session_id: str,
        content: str,
        connection: EventSink | None = None,
    ) -> bool:
        """Deliver *content* to a session, creating it on first use."""
        self._check_id(session_id)
        entry = await self._settled_entry(session_id)
        if entry is None:
            # Registered before spawning so concurrent sends reuse it.
            entry = _PoolEntry(session_id=session_id, connection=connection)
            entry.queue.append(content)
            self._entries[session_id] = entry
            return await self._spawn(entry)

        if connection is not None:
            entry.connection = connection
        session = entry.session
        if session is None or entry.is_processing or session.state is not SessionState.READY:
            entry.queue.append(content)
            self._post(entry, {
                "type": "queued",
                "lizardId": session_id,
                "position": len(entry.queue),
            })
            logger.debug(
                "Pool: queued message for %s (position %d)",
                session_id, len(entry.queue),
            )
            return True

        self._dispatch(entry, content)
        return True

    def respond(self, session_id: str, content: str) -> bool:
        """Answer a pending prompt in a session."""
        self._check_id(session_id)
        entry = self._entries.get(session_id)
        if (
            entry is None
            or entry.reaper is not None
            or entry.session is None
            or not entry.session.is_running
        ):
            return False
        entry.session.respond(content)
        return True

    async def reset_session(self, session_id: str) -> bool:
        """Clear the queue and force ready; respawn if the process died."""
        self._check_id(session_id)
        entry = await self._settled_entry(session_id)
        if entry is None:
            return False
        entry.queue.clear()
        entry.is_processing = False
        session = entry.session
        if session is None:
            return True
        if not session.is_running:
            logger.info("Pool: respawning dead session %s on reset", session_id)
            await session.kill()
            fresh = _PoolEntry(session_id=session_id, connection=entry.connection)
            self._entries[session_id] = fresh
            return await self._spawn(fresh)
        session.reset()
        return True

    # ── Teardown ────────────────────────────────────────────────

    async def kill_session(self, session_id: str) -> bool:
        entry = self._entries.pop(session_id, None)
        if entry is None:
            return False
        if entry.session is not None:
            await entry.session.kill()
        logger.info("Pool: killed session %s", session_id)
        return True

    async def kill_all_sessions(self) -> int:
        """Kill every session. Returns how many were live beforehand."""
        entries = list(self._entries.values())
        self._entries.clear()
        live = sum(
            1 for e in entries
            if e.session is None or e.session.is_running
        )
        sessions = [e.session for e in entries if e.session is not None]
        if sessions:
            await asyncio.gather(
                *(s.kill() for s in sessions), return_exceptions=True
            )
        logger.info("Pool: killed all sessions (%d live)", live)
        return live

    async def shutdown(self) -> None:
        await self.kill_all_sessions()
        self._plans.clear()

    # ── Introspection ───────────────────────────────────────────

    def session_ids(self) -> list[str]:
        return list(self._entries)

    def get_active_sessions(self) -> list[SessionSnapshot]:
        snapshots = []
        for entry in self._entries.values():
            session = entry.session
            snapshots.append(SessionSnapshot(
                session_id=entry.session_id,
                state=session.state if session is not None else SessionState.LOADING,
                is_processing=entry.is_processing,
                is_running=session.is_running if session is not None else False,
                queue_length=len(entry.queue),
            ))
        return snapshots

    def debug_snapshot(self) -> dict[str, Any]:
        return {
            "workingDir": self.working_dir,
            "sessions": [
                {
                    **snap.to_dict(),
                    "pid": entry.session.pid if entry.session else None,
                    "hasConnection": entry.connection is not None,
                }
                for snap, entry in zip(
                    self.get_active_sessions(), self._entries.values()
                )
            ],
            "plans": [p.to_dict() for p in self._plans.values()],
        }

    # ── Connections ─────────────────────────────────────────────

    def attach_connection(self, connection: EventSink) -> None:
        """Route events of every live session to *connection*."""
        for entry in self._entries.values():
            entry.connection = connection

    def detach_connection(self, connection: EventSink) -> None:
        for entry in self._entries.values():
            if entry.connection is connection:
                entry.connection = None

    # ── Plans ───────────────────────────────────────────────────

    async def build_plan(
        self,
        prompt: str,
        plan_id: str,
        reported_agents: list[dict[str, Any]] | None = None,
    ) -> PlanOutcome:
        agents = self._agent_refs(reported_agents or [])
        outcome = await self._plan_resolver(prompt, plan_id, self.working_dir, agents)
        if outcome.kind == "plan" and outcome.plan is not None:
            self._plans[plan_id] = outcome.plan
            logger.info(
                "Pool: plan %s created with %d tasks",
                plan_id, len(outcome.plan.tasks),
            )
        return outcome

    def get_plan(self, plan_id: str) -> ExecutionPlan | None:
        return self._plans.get(plan_id)

    def execute_plan(self, plan_id: str) -> ExecutionPlan | None:
        plan = self._plans.get(plan_id)
        if plan is None:
            return None
        plan.status = PlanStatus.EXECUTING
        return plan

    def update_task(
        self,
        plan_id: str,
        task_id: str,
        status: TaskStatus,
        session_id: str | None = None,
    ) -> ExecutionPlan | None:
        plan = self._plans.get(plan_id)
        if plan is None:
            return None
        task = plan.get_task(task_id)
        if task is None:
            return None
        task.status = status
        if session_id:
            task.assigned_session_id = session_id

        if any(t.status is TaskStatus.FAILED for t in plan.tasks):
            plan.status = PlanStatus.FAILED
        elif all(t.status is TaskStatus.COMPLETED for t in plan.tasks):
            plan.status = PlanStatus.COMPLETED
        elif plan.status is PlanStatus.CREATED:
            plan.status = PlanStatus.EXECUTING
        return plan

    def cancel_plan(self, plan_id: str) -> ExecutionPlan | None:
        plan = self._plans.pop(plan_id, None)
        if plan is None:
            return None
        plan.status = PlanStatus.FAILED
        logger.info("Pool: plan %s cancelled", plan_id)
        return plan

    def plans(self) -> list[ExecutionPlan]:
        return list(self._plans.values())

    async def _resolve_plan_with_tools(
        self,
        prompt: str,
        plan_id: str,
        working_dir: str,
        agents: list[dict[str, Any]],
    ) -> PlanOutcome:
        return await plan_with_tools(
            prompt,
            plan_id,
            working_dir,
            agents,
            executable=shlex.split(self.config.planner_command),
            model=self.config.tools_model,
        )

    def _agent_refs(self, reported: list[dict[str, Any]]) -> list[dict[str, Any]]:
        refs = [
            {"lizardId": sid, "isWorker": sid.startswith("worker_")}
            for sid in self._entries
        ]
        known = set(self._entries)
        for agent in reported:
            if not isinstance(agent, dict):
                continue
            agent_id = agent.get("id") or agent.get("lizardId")
            if not isinstance(agent_id, str) or agent_id in known:
                continue
            known.add(agent_id)
            refs.append({"lizardId": agent_id, "isWorker": bool(agent.get("isWorker"))})
        return refs

    # ── Internals ───────────────────────────────────────────────

    @staticmethod
    def _check_id(session_id: str) -> None:
        if session_id == MASTER_ID:
            raise ProtocolError(f"'{MASTER_ID}' is reserved for the planner")

    async def _settled_entry(self, session_id: str) -> _PoolEntry | None:
        """The entry for *session_id* once no process is being terminated."""
        entry = self._entries.get(session_id)
        while entry is not None and entry.reaper is not None:
            await asyncio.wait({entry.reaper})
            entry = self._entries.get(session_id)
        return entry

    async def _reap(self, entry: _PoolEntry) -> None:
        assert entry.session is not None
        try:
            await entry.session.kill(self.config.session_kill_grace_seconds)
        except Exception:
            logger.exception("Pool: failed to stop session %s", entry.session_id)
        finally:
            if self._entries.get(entry.session_id) is entry:
                del self._entries[entry.session_id]
            logger.info("Pool: session %s released", entry.session_id)

    async def _spawn(self, entry: _PoolEntry) -> bool:
        session_id = entry.session_id
        try:
            session = await self._session_factory(
                session_id,
                self.working_dir,
                command=self.config.agent_command,
                on_state_change=lambda _sid, state: self._on_session_state(entry, state),
                on_output=lambda _sid, chunk: self._on_session_output(entry, chunk),
                cols=self.config.terminal_cols,
                rows=self.config.terminal_rows,
                turn_timeout_seconds=self.config.session_turn_timeout_seconds,
                kill_grace_seconds=self.config.session_kill_grace_seconds,
            )
        except SessionSpawnError as exc:
            logger.error("Pool: %s", exc)
            if self._entries.get(session_id) is entry:
                del self._entries[session_id]
                self._post(entry, {
                    "type": "state", "lizardId": session_id,
                    "state": SessionState.ERROR.value,
                })
                self._post(entry, {
                    "type": "error", "lizardId": session_id,
                    "message": f"Failed to start session: {exc.reason}",
                })
            return False

        if self._entries.get(session_id) is not entry:
            logger.info("Pool: session %s removed while starting", session_id)
            await session.kill()
            return False

        entry.session = session
        self._post(entry, {
            "type": "state", "lizardId": session_id,
            "state": session.state.value,
        })
        self._drain_queue(entry)
        return True

    def _dispatch(self, entry: _PoolEntry, content: str) -> None:
        assert entry.session is not None
        entry.is_processing = True
        logger.debug("Pool: dispatching to %s: %.80s", entry.session_id, content)
        entry.session.send(content)

    def _drain_queue(self, entry: _PoolEntry) -> None:
        session = entry.session
        if (
            session is None
            or entry.is_processing
            or not entry.queue
            or session.state is not SessionState.READY
        ):
            return
        self._dispatch(entry, entry.queue.popleft())

    def _on_session_state(self, entry: _PoolEntry, state: SessionState) -> None:
        session_id = entry.session_id
        if self._entries.get(session_id) is not entry:
            return
        if entry.session is None and state is SessionState.ERROR:
            # Spawn failure; reported by _spawn.
            return
        self._post(entry, {
            "type": "state", "lizardId": session_id, "state": state.value,
        })

        if state is SessionState.READY:
            if entry.is_processing and entry.session is not None:
                entry.is_processing = False
                self._post(entry, {
                    "type": "response",
                    "lizardId": session_id,
                    "text": extract_response(entry.session.output_buffer),
                })
            self._drain_queue(entry)
        elif state is SessionState.WAITING_INPUT:
            buffer = entry.session.output_buffer if entry.session else ""
            self._post(entry, {
                "type": "permission",
                "lizardId": session_id,
                "prompt": extract_response(buffer[-_PERMISSION_CONTEXT_CHARS:]),
            })
        elif state is SessionState.ERROR:
            entry.is_processing = False
            session = entry.session
            if session is not None and session.is_running:
                # The id stays taken until the process is gone.
                entry.reaper = asyncio.create_task(
                    self._reap(entry), name=f"gekto-pool-reap-{session_id}"
                )
                message = "Session stopped responding and is being terminated"
            else:
                del self._entries[session_id]
                returncode = session.returncode if session else None
                message = f"Session exited (code {returncode})"
            self._post(entry, {
                "type": "error", "lizardId": session_id, "message": message,
            })
            logger.warning(
                "Pool: session %s failed (%s), %d queued messages dropped",
                session_id, message, len(entry.queue),
            )
            entry.queue.clear()

    def _on_session_output(self, entry: _PoolEntry, chunk: str) -> None:
        if self._entries.get(entry.session_id) is not entry:
            return
        self._post(entry, {
            "type": "output", "lizardId": entry.session_id, "data": chunk,
        })

    @staticmethod
    def _post(entry: _PoolEntry, message: dict[str, Any]) -> None:
        connection = entry.connection
        if connection is None or not connection.is_open:
            return
        connection.post(message)
