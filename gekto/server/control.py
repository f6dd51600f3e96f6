"""Control-plane WebSocket endpoint (``/__gekto/agent``).

One message loop per connection. Each JSON text frame carries a
``type`` discriminator; handlers reply on the originating connection
except for planner state, which goes to every connection. Slow
commands (planner calls, session spawns) run as tasks so a client can
keep talking to its other sessions while one is busy.
"""
from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Awaitable, Callable

from aiohttp import WSMsgType, web

from gekto.engine.errors import ProtocolError
from gekto.engine.models import (
    MASTER_ID,
    PlannerCallbacks,
    PlannerMode,
    PlanStatus,
    SessionState,
    TaskStatus,
)
from gekto.engine.planner import MSG_FAILED, PersistentPlanner
from gekto.engine.pool import AgentPool
from gekto.engine.stream_json import summarize_input

from .connections import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, dict[str, Any]], Awaitable[None]]

# Terminal answers for the widget's approve/deny buttons.
PERMISSION_APPROVE = "y"
PERMISSION_DENY = "n"

_TASK_STATUS_BY_TYPE = {
    "task_started": TaskStatus.IN_PROGRESS,
    "task_completed": TaskStatus.COMPLETED,
    "task_failed": TaskStatus.FAILED,
}


def parse_message(data: str) -> dict[str, Any]:
    """Decode one frame into a command envelope. Raises ProtocolError."""
    try:
        message = json.loads(data)
    except (json.JSONDecodeError, TypeError) as exc:
        raise ProtocolError(f"Invalid JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")
    msg_type = message.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("Message is missing 'type'")
    return message


def require_str(message: dict[str, Any], key: str) -> str:
    value = message.get(key)
    if not isinstance(value, str) or not value:
        raise ProtocolError(
            f"'{message.get('type')}' requires a non-empty string '{key}'",
            msg_type=message.get("type"),
        )
    return value


class ControlPlane:
    """Dispatches client commands onto the pool and the planner."""

    def __init__(
        self,
        pool: AgentPool,
        planner: PersistentPlanner,
        registry: ConnectionRegistry,
    ):
        self.pool = pool
        self.planner = planner
        self.registry = registry
        self._tasks: set[asyncio.Task] = set()
        self._handlers: dict[str, Handler] = {
            "list_agents": self._handle_list_agents,
            "debug_pool": self._handle_debug_pool,
            "kill_all": self._handle_kill_all,
            "create_plan": self._handle_create_plan,
            "delegate_prompt": self._handle_create_plan,
            "execute_plan": self._handle_execute_plan,
            "cancel_plan": self._handle_cancel_plan,
            "task_started": self._handle_task_update,
            "task_completed": self._handle_task_update,
            "task_failed": self._handle_task_update,
            "chat": self._handle_chat,
            "respond": self._handle_respond,
            "permission_response": self._handle_permission_response,
            "reset": self._handle_reset,
            "kill": self._handle_kill,
        }

    # ── Connection loop ─────────────────────────────────────────

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=30.0)
        await ws.prepare(request)

        connection = Connection(ws)
        sender = asyncio.create_task(
            connection.run_sender(), name=f"gekto-ws-sender-{connection.id}"
        )
        self.registry.add(connection)
        self.pool.attach_connection(connection)
        self.send_resync(connection)

        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    await self.handle_text(connection, msg.data)
                elif msg.type == WSMsgType.BINARY:
                    connection.post({
                        "type": "error",
                        "message": "Binary frames are not supported",
                    })
                elif msg.type == WSMsgType.ERROR:
                    logger.warning(
                        "%r: socket error: %s", connection, ws.exception()
                    )
                    break
        finally:
            self.registry.remove(connection)
            self.pool.detach_connection(connection)
            connection.close()
            await sender
        return ws

    def send_resync(self, connection: Connection) -> None:
        """Initial burst letting a (re)connecting client rebuild its view."""
        connection.post({"type": "info", "workingDir": self.pool.working_dir})
        connection.post({"type": "gekto_state", "state": self.planner.state.value})
        for snap in self.pool.get_active_sessions():
            connection.post({
                "type": "state",
                "lizardId": snap.session_id,
                "state": snap.state.value,
            })

    async def handle_text(self, connection: Connection, data: str) -> None:
        try:
            message = parse_message(data)
        except ProtocolError as exc:
            connection.post({"type": "error", "message": str(exc)})
            return
        await self.dispatch(connection, message)

    async def dispatch(self, connection: Connection, message: dict[str, Any]) -> None:
        msg_type = message["type"]
        handler = self._handlers.get(msg_type)
        if handler is None:
            connection.post({
                "type": "error",
                "message": f"Unknown message type: {msg_type}",
            })
            return
        await self._guarded(connection, msg_type, handler(connection, message))

    async def _guarded(
        self, connection: Connection, msg_type: str, coro: Awaitable[None]
    ) -> None:
        try:
            await coro
        except ProtocolError as exc:
            connection.post({"type": "error", "message": str(exc)})
        except Exception:
            logger.exception("%r: handler for %s failed", connection, msg_type)
            connection.post({
                "type": "error",
                "message": f"Internal error handling '{msg_type}'",
            })

    def _spawn(self, connection: Connection, msg_type: str, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(self._guarded(connection, msg_type, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Pool-wide commands ──────────────────────────────────────

    async def _handle_list_agents(self, connection: Connection, message: dict[str, Any]) -> None:
        connection.post({
            "type": "agents_list",
            "agents": [s.to_dict() for s in self.pool.get_active_sessions()],
        })

    async def _handle_debug_pool(self, connection: Connection, message: dict[str, Any]) -> None:
        snapshot = self.pool.debug_snapshot()
        logger.info(
            "Pool debug: %d sessions, %d plans, planner=%s, clients=%d\n%s",
            len(snapshot["sessions"]), len(snapshot["plans"]),
            self.planner.state.value, len(self.registry),
            json.dumps(snapshot, indent=2),
        )
        connection.post({
            "type": "debug_pool_result",
            "agents": snapshot["sessions"],
            "plans": snapshot["plans"],
            "gektoState": self.planner.state.value,
        })

    async def _handle_kill_all(self, connection: Connection, message: dict[str, Any]) -> None:
        former_ids = self.pool.session_ids()
        killed = await self.pool.kill_all_sessions()
        connection.post({"type": "kill_all_result", "killed": killed})
        for session_id in former_ids:
            self.registry.broadcast({
                "type": "state",
                "lizardId": session_id,
                "state": SessionState.READY.value,
            })

    # ── Planner ─────────────────────────────────────────────────

    async def _handle_create_plan(self, connection: Connection, message: dict[str, Any]) -> None:
        prompt = require_str(message, "prompt")
        plan_id = message.get("planId")
        if message["type"] == "create_plan":
            plan_id = require_str(message, "planId")
        elif not isinstance(plan_id, str) or not plan_id:
            plan_id = f"plan_{uuid.uuid4().hex[:12]}"
        mode_raw = message.get("mode", PlannerMode.PLAN.value)
        try:
            mode = PlannerMode(mode_raw)
        except ValueError:
            raise ProtocolError(f"Unknown planner mode: {mode_raw!r}") from None
        lizards = message.get("lizards")
        reported = lizards if isinstance(lizards, list) else []
        self._spawn(
            connection,
            message["type"],
            self._run_create_plan(connection, plan_id, prompt, mode, reported),
        )

    def _planner_callbacks(self, connection: Connection, plan_id: str) -> PlannerCallbacks:
        def tool_event(status: str) -> Callable[[str, dict[str, Any]], None]:
            def _post(tool: str, tool_input: dict[str, Any]) -> None:
                connection.post({
                    "type": "tool",
                    "lizardId": MASTER_ID,
                    "planId": plan_id,
                    "status": status,
                    "tool": tool,
                    "input": summarize_input(tool_input),
                    "fullInput": tool_input,
                })
            return _post

        return PlannerCallbacks(
            on_tool_start=tool_event("running"),
            on_tool_end=tool_event("completed"),
            on_text=lambda text: connection.post({
                "type": "gekto_text", "planId": plan_id, "text": text,
            }),
            on_classified=lambda mode: connection.post({
                "type": "gekto_classified", "planId": plan_id, "mode": mode.value,
            }),
        )

    async def _run_create_plan(
        self,
        connection: Connection,
        plan_id: str,
        prompt: str,
        mode: PlannerMode,
        reported_agents: list[dict[str, Any]],
    ) -> None:
        self.registry.broadcast({
            "type": "state", "lizardId": MASTER_ID,
            "state": SessionState.WORKING.value,
        })
        try:
            result = await self.planner.send(
                prompt, mode, self._planner_callbacks(connection, plan_id)
            )
            if result.mode is PlannerMode.DIRECT:
                connection.post({
                    "type": "gekto_chat",
                    "planId": plan_id,
                    "message": result.message,
                    "timing": result.timing(),
                })
                return

            outcome = await self.pool.build_plan(prompt, plan_id, reported_agents)
            if outcome.kind == "plan" and outcome.plan is not None:
                connection.post({
                    "type": "plan_created",
                    "planId": plan_id,
                    "plan": outcome.plan.to_dict(),
                })
            elif outcome.kind == "remove":
                for session_id in outcome.remove:
                    await self.pool.kill_session(session_id)
                connection.post({
                    "type": "gekto_remove",
                    "planId": plan_id,
                    "agents": outcome.remove,
                    "removedAgents": outcome.remove,
                })
            else:
                connection.post({
                    "type": "gekto_chat",
                    "planId": plan_id,
                    "message": outcome.message,
                    "timing": result.timing(),
                })
        except Exception:
            logger.exception("create_plan %s failed", plan_id)
            connection.post({
                "type": "gekto_chat", "planId": plan_id, "message": MSG_FAILED,
            })
        finally:
            self.registry.broadcast({
                "type": "state", "lizardId": MASTER_ID,
                "state": SessionState.READY.value,
            })

    # ── Plans ───────────────────────────────────────────────────

    def _post_plan(self, connection: Connection, plan_id: str, plan: Any) -> None:
        if plan is None:
            raise ProtocolError(f"Unknown plan: {plan_id}")
        connection.post({
            "type": "plan_updated", "planId": plan_id, "plan": plan.to_dict(),
        })

    async def _handle_execute_plan(self, connection: Connection, message: dict[str, Any]) -> None:
        plan_id = require_str(message, "planId")
        self._post_plan(connection, plan_id, self.pool.execute_plan(plan_id))

    async def _handle_cancel_plan(self, connection: Connection, message: dict[str, Any]) -> None:
        plan_id = require_str(message, "planId")
        self._post_plan(connection, plan_id, self.pool.cancel_plan(plan_id))

    async def _handle_task_update(self, connection: Connection, message: dict[str, Any]) -> None:
        plan_id = require_str(message, "planId")
        task_id = require_str(message, "taskId")
        session_id = message.get("lizardId")
        if self.pool.get_plan(plan_id) is None:
            raise ProtocolError(f"Unknown plan: {plan_id}")
        plan = self.pool.update_task(
            plan_id,
            task_id,
            _TASK_STATUS_BY_TYPE[message["type"]],
            session_id if isinstance(session_id, str) else None,
        )
        if plan is None:
            raise ProtocolError(f"Unknown task {task_id} in plan {plan_id}")
        self._post_plan(connection, plan_id, plan)
        if plan.status is PlanStatus.FAILED:
            connection.post({"type": "plan_failed", "planId": plan_id})

    # ── Session commands ────────────────────────────────────────

    async def _handle_chat(self, connection: Connection, message: dict[str, Any]) -> None:
        session_id = require_str(message, "lizardId")
        content = require_str(message, "content")
        if session_id == MASTER_ID:
            raise ProtocolError("Use 'create_plan' to talk to the planner")
        self._spawn(
            connection,
            "chat",
            self.pool.send_message(session_id, content, connection),
        )

    async def _handle_respond(self, connection: Connection, message: dict[str, Any]) -> None:
        session_id = require_str(message, "lizardId")
        content = message.get("content")
        if not isinstance(content, str):
            raise ProtocolError("'respond' requires a string 'content'")
        if not self.pool.respond(session_id, content):
            raise ProtocolError(f"Unknown session: {session_id}")

    async def _handle_permission_response(
        self, connection: Connection, message: dict[str, Any]
    ) -> None:
        session_id = require_str(message, "lizardId")
        approved = message.get("approved")
        if not isinstance(approved, bool):
            raise ProtocolError("'permission_response' requires a boolean 'approved'")
        answer = PERMISSION_APPROVE if approved else PERMISSION_DENY
        if not self.pool.respond(session_id, answer):
            raise ProtocolError(f"Unknown session: {session_id}")

    async def _handle_reset(self, connection: Connection, message: dict[str, Any]) -> None:
        session_id = require_str(message, "lizardId")
        if not await self.pool.reset_session(session_id):
            raise ProtocolError(f"Unknown session: {session_id}")
        for snap in self.pool.get_active_sessions():
            if snap.session_id == session_id:
                connection.post({
                    "type": "state", "lizardId": session_id,
                    "state": snap.state.value,
                })

    async def _handle_kill(self, connection: Connection, message: dict[str, Any]) -> None:
        session_id = require_str(message, "lizardId")
        if session_id == MASTER_ID:
            aborted = self.planner.abort()
            connection.post({
                "type": "kill_result", "lizardId": MASTER_ID, "killed": aborted,
            })
            return
        if not await self.pool.kill_session(session_id):
            raise ProtocolError(f"Unknown session: {session_id}")
        connection.post({
            "type": "kill_result", "lizardId": session_id, "killed": True,
        })
