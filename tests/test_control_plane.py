from __future__ import annotations

import asyncio
import tempfile
import warnings
from typing import Any

import pytest
from aiohttp import web
from aiohttp.test_utils import AioHTTPTestCase

from gekto.engine.config import GektoConfig
from gekto.engine.errors import ProtocolError
from gekto.engine.models import (
    ExecutionPlan,
    PlanOutcome,
    PlannerCallbacks,
    PlannerMode,
    PlannerResult,
    PlannerState,
    Task,
)
from gekto.engine.pool import AgentPool
from gekto.server.control import parse_message
from gekto.server.server import GektoServer
from offline_session import OfflineFactory


class FakePlanner:
    """Answers "plan ..." prompts with plan mode, everything else directly."""

    def __init__(self) -> None:
        self.state = PlannerState.READY
        self.prompts: list[tuple[str, PlannerMode]] = []
        self.aborts = 0

    async def init(self, working_dir: str, on_state=None) -> bool:
        return True

    async def shutdown(self) -> None:
        pass

    def abort(self) -> bool:
        self.aborts += 1
        return False

    async def send(
        self,
        prompt: str,
        mode: PlannerMode | str = PlannerMode.PLAN,
        callbacks: PlannerCallbacks | None = None,
    ) -> PlannerResult:
        mode = PlannerMode(mode)
        self.prompts.append((prompt, mode))
        callbacks = callbacks or PlannerCallbacks()
        if mode is PlannerMode.PLAN and prompt.startswith("plan"):
            callbacks.on_classified(PlannerMode.PLAN)
            return PlannerResult(PlannerMode.PLAN, "Creating plan...", 5)
        if mode is PlannerMode.PLAN:
            callbacks.on_classified(PlannerMode.DIRECT)
        callbacks.on_tool_start("Read", {"file_path": "src/app.ts"})
        callbacks.on_tool_end("Read", {"file_path": "src/app.ts"})
        callbacks.on_text("Hello")
        return PlannerResult(PlannerMode.DIRECT, "Hello back", 5, 10)


async def fake_resolver(
    prompt: str, plan_id: str, working_dir: str, agents: list[dict[str, Any]]
) -> PlanOutcome:
    if "remove" in prompt:
        return PlanOutcome(
            kind="remove",
            remove=[a["lizardId"] for a in agents if a["lizardId"] != "master"],
        )
    if "chat" in prompt:
        return PlanOutcome.chat("Just chatting")
    return PlanOutcome(kind="plan", plan=ExecutionPlan(
        id=plan_id,
        original_prompt=prompt,
        tasks=[
            Task(id="task_1", description="A", prompt="do A"),
            Task(id="task_2", description="B", prompt="do B"),
        ],
    ))


def test_parse_message_rejects_bad_frames() -> None:
    with pytest.raises(ProtocolError, match="Invalid JSON"):
        parse_message("{nope")
    with pytest.raises(ProtocolError, match="JSON object"):
        parse_message("[1]")
    with pytest.raises(ProtocolError, match="missing 'type'"):
        parse_message('{"lizardId": "worker_1"}')
    assert parse_message('{"type": "list_agents"}') == {"type": "list_agents"}


class TestControlPlane(AioHTTPTestCase):
    async def get_application(self):
        self.tmpdir = tempfile.mkdtemp()
        config = GektoConfig(working_dir=self.tmpdir)
        self.factory = OfflineFactory()
        self.planner = FakePlanner()
        self.pool = AgentPool(
            config, session_factory=self.factory, plan_resolver=fake_resolver
        )
        self.gekto_server = GektoServer(
            config, pool=self.pool, planner=self.planner, init_planner=False
        )
        return self.gekto_server._app

    async def _connect(self):
        ws = await self.client.ws_connect("/__gekto/agent")
        info = await ws.receive_json(timeout=5)
        state = await ws.receive_json(timeout=5)
        assert info == {"type": "info", "workingDir": self.tmpdir}
        assert state == {"type": "gekto_state", "state": "ready"}
        return ws

    @staticmethod
    async def _collect_until(ws, predicate) -> list[dict[str, Any]]:
        messages = []
        while True:
            message = await ws.receive_json(timeout=5)
            messages.append(message)
            if predicate(message):
                return messages

    async def _next(self, ws, msg_type: str) -> dict[str, Any]:
        messages = await self._collect_until(ws, lambda m: m["type"] == msg_type)
        return messages[-1]

    async def _start_worker(self, ws, session_id: str = "worker_1"):
        await ws.send_json({"type": "chat", "lizardId": session_id, "content": "hi"})
        state = await self._next(ws, "state")
        assert state == {"type": "state", "lizardId": session_id, "state": "loading"}
        return self.factory.latest(session_id)

    # ── Envelope handling ──

    async def test_unknown_and_malformed_messages(self):
        ws = await self._connect()
        await ws.send_str("not json")
        error = await ws.receive_json(timeout=5)
        assert error["type"] == "error"
        assert error["message"].startswith("Invalid JSON")

        await ws.send_json({"type": "bogus"})
        error = await ws.receive_json(timeout=5)
        assert error == {"type": "error", "message": "Unknown message type: bogus"}

        await ws.send_json({"type": "chat", "lizardId": "worker_1"})
        error = await ws.receive_json(timeout=5)
        assert error["type"] == "error"
        assert "content" in error["message"]
        await ws.close()

    async def test_health_endpoint(self):
        resp = await self.client.get("/__gekto/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["cwd"] == self.tmpdir
        assert data["planner_state"] == "ready"
        assert data["sessions"] == 0

    async def test_request_logging_sets_no_untyped_request_keys(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error", web.NotAppKeyWarning)
            resp = await self.client.get("/__gekto/health")
        assert resp.status == 200

    # ── Sessions ──

    async def test_chat_round_trip(self):
        ws = await self._connect()
        session = await self._start_worker(ws)

        session.feed("> ")
        await self._collect_until(
            ws, lambda m: m["type"] == "state" and m["state"] == "working"
        )
        assert session.written == [b"hi\r"]

        session.feed("Hi! How can I help?\n> ")
        response = await self._next(ws, "response")
        assert response == {
            "type": "response", "lizardId": "worker_1", "text": "Hi! How can I help?",
        }

        await ws.send_json({"type": "list_agents"})
        agents = await self._next(ws, "agents_list")
        assert [a["lizardId"] for a in agents["agents"]] == ["worker_1"]
        assert agents["agents"][0]["state"] == "ready"
        await ws.close()

    async def test_reconnect_resyncs_sessions(self):
        ws = await self._connect()
        session = await self._start_worker(ws)
        session.feed("> ")
        await self._collect_until(
            ws, lambda m: m["type"] == "state" and m["state"] == "working"
        )
        await ws.close()

        ws2 = await self._connect()
        resync = await ws2.receive_json(timeout=5)
        assert resync == {"type": "state", "lizardId": "worker_1", "state": "working"}

        session.feed("done\n> ")
        response = await self._next(ws2, "response")
        assert response["text"] == "done"
        await ws2.close()

    async def test_chat_to_master_is_rejected(self):
        ws = await self._connect()
        await ws.send_json({"type": "chat", "lizardId": "master", "content": "hi"})
        error = await self._next(ws, "error")
        assert "create_plan" in error["message"]
        assert self.pool.session_ids() == []
        await ws.close()

    async def test_respond_reset_and_kill(self):
        ws = await self._connect()
        await ws.send_json({"type": "respond", "lizardId": "worker_9", "content": "y"})
        assert (await self._next(ws, "error"))["message"] == "Unknown session: worker_9"
        await ws.send_json({"type": "reset", "lizardId": "worker_9"})
        assert (await self._next(ws, "error"))["message"] == "Unknown session: worker_9"
        await ws.send_json({"type": "kill", "lizardId": "worker_9"})
        assert (await self._next(ws, "error"))["message"] == "Unknown session: worker_9"

        session = await self._start_worker(ws)
        session.feed("> ")
        session.feed("Allow write to a.txt? [y/N]")
        permission = await self._next(ws, "permission")
        assert "a.txt" in permission["prompt"]

        await ws.send_json({"type": "respond", "lizardId": "worker_1", "content": "y"})
        await self._collect_until(
            ws, lambda m: m["type"] == "state" and m["state"] == "working"
        )
        assert session.written[-1] == b"y\r"

        await ws.send_json({"type": "reset", "lizardId": "worker_1"})
        state = await self._collect_until(
            ws, lambda m: m["type"] == "state" and m["state"] == "ready"
        )
        assert state[-1]["lizardId"] == "worker_1"

        await ws.send_json({"type": "kill", "lizardId": "worker_1"})
        result = await self._next(ws, "kill_result")
        assert result == {"type": "kill_result", "lizardId": "worker_1", "killed": True}
        assert session.killed is True
        assert self.pool.session_ids() == []
        await ws.close()

    async def test_permission_buttons_answer_the_prompt(self):
        ws = await self._connect()
        await ws.send_json({
            "type": "permission_response", "lizardId": "worker_9", "approved": True,
        })
        assert (await self._next(ws, "error"))["message"] == "Unknown session: worker_9"

        session = await self._start_worker(ws)
        session.feed("> ")
        session.feed("Allow write to a.txt? [y/N]")
        await self._next(ws, "permission")

        await ws.send_json({
            "type": "permission_response", "lizardId": "worker_1", "approved": True,
        })
        await self._collect_until(
            ws, lambda m: m["type"] == "state" and m["state"] == "working"
        )
        assert session.written == [b"hi\r", b"y\r"]

        session.feed("Proceed? [y/N]")
        await self._next(ws, "permission")
        await ws.send_json({
            "type": "permission_response", "lizardId": "worker_1", "approved": False,
        })
        await self._collect_until(
            ws, lambda m: m["type"] == "state" and m["state"] == "working"
        )
        assert session.written[-1] == b"n\r"

        await ws.send_json({
            "type": "permission_response", "lizardId": "worker_1", "approved": "yes",
        })
        error = await self._next(ws, "error")
        assert "approved" in error["message"]
        await ws.close()

    async def test_kill_master_aborts_planner(self):
        ws = await self._connect()
        await ws.send_json({"type": "kill", "lizardId": "master"})
        result = await self._next(ws, "kill_result")
        assert result == {"type": "kill_result", "lizardId": "master", "killed": False}
        assert self.planner.aborts == 1
        await ws.close()

    async def test_kill_all(self):
        ws = await self._connect()
        await self._start_worker(ws, "worker_1")
        await self._start_worker(ws, "worker_2")

        await ws.send_json({"type": "kill_all"})
        result = await self._next(ws, "kill_all_result")
        assert result == {"type": "kill_all_result", "killed": 2}
        first = await ws.receive_json(timeout=5)
        second = await ws.receive_json(timeout=5)
        assert {first["lizardId"], second["lizardId"]} == {"worker_1", "worker_2"}
        assert first["state"] == second["state"] == "ready"
        assert self.pool.session_ids() == []
        await ws.close()

    async def test_debug_pool(self):
        ws = await self._connect()
        await self._start_worker(ws)
        await ws.send_json({"type": "debug_pool"})
        result = await self._next(ws, "debug_pool_result")
        assert result["gektoState"] == "ready"
        assert result["agents"][0]["lizardId"] == "worker_1"
        assert result["plans"] == []
        await ws.close()

    # ── Planner ──

    async def test_direct_planner_request(self):
        ws = await self._connect()
        await ws.send_json({
            "type": "create_plan", "planId": "plan_1", "prompt": "what is this repo?",
        })
        messages = await self._collect_until(
            ws,
            lambda m: m["type"] == "state" and m["lizardId"] == "master"
            and m["state"] == "ready",
        )
        types = [m["type"] for m in messages]
        assert types == [
            "state", "gekto_classified", "tool", "tool", "gekto_text",
            "gekto_chat", "state",
        ]
        assert messages[0] == {"type": "state", "lizardId": "master", "state": "working"}
        assert messages[1] == {
            "type": "gekto_classified", "planId": "plan_1", "mode": "direct",
        }
        running, completed = messages[2], messages[3]
        assert running["status"] == "running"
        assert completed["status"] == "completed"
        assert running["lizardId"] == "master"
        assert running["tool"] == "Read"
        assert running["input"] == "src/app.ts"
        assert running["fullInput"] == {"file_path": "src/app.ts"}
        assert messages[5] == {
            "type": "gekto_chat",
            "planId": "plan_1",
            "message": "Hello back",
            "timing": {"classifyMs": 5, "workMs": 10},
        }
        await ws.close()

    async def test_create_plan_and_track_tasks(self):
        ws = await self._connect()
        await ws.send_json({
            "type": "create_plan", "planId": "plan_1", "prompt": "plan a shop",
        })
        created = await self._next(ws, "plan_created")
        assert created["planId"] == "plan_1"
        assert [t["id"] for t in created["plan"]["tasks"]] == ["task_1", "task_2"]
        assert created["plan"]["status"] == "created"

        await ws.send_json({"type": "execute_plan", "planId": "plan_1"})
        updated = await self._next(ws, "plan_updated")
        assert updated["plan"]["status"] == "executing"

        await ws.send_json({
            "type": "task_started", "planId": "plan_1", "taskId": "task_1",
            "lizardId": "worker_1",
        })
        updated = await self._next(ws, "plan_updated")
        assert updated["plan"]["tasks"][0]["status"] == "in_progress"
        assert updated["plan"]["tasks"][0]["assignedLizardId"] == "worker_1"

        await ws.send_json({
            "type": "task_failed", "planId": "plan_1", "taskId": "task_2",
        })
        updated = await self._next(ws, "plan_updated")
        assert updated["plan"]["status"] == "failed"
        assert await ws.receive_json(timeout=5) == {
            "type": "plan_failed", "planId": "plan_1",
        }

        await ws.send_json({"type": "task_completed", "planId": "plan_1", "taskId": "nope"})
        error = await self._next(ws, "error")
        assert "nope" in error["message"]

        await ws.send_json({"type": "cancel_plan", "planId": "plan_1"})
        updated = await self._next(ws, "plan_updated")
        assert updated["plan"]["status"] == "failed"

        await ws.send_json({"type": "execute_plan", "planId": "plan_1"})
        error = await self._next(ws, "error")
        assert error["message"] == "Unknown plan: plan_1"
        await ws.close()

    async def test_plan_mode_remove_kills_sessions(self):
        ws = await self._connect()
        await self._start_worker(ws, "worker_1")
        await ws.send_json({
            "type": "create_plan", "planId": "plan_2", "prompt": "plan remove all",
            "lizards": [{"id": "worker_1", "isWorker": True}],
        })
        removed = await self._next(ws, "gekto_remove")
        assert removed == {
            "type": "gekto_remove",
            "planId": "plan_2",
            "agents": ["worker_1"],
            "removedAgents": ["worker_1"],
        }
        assert self.pool.session_ids() == []
        assert self.factory.latest("worker_1").killed is True
        await ws.close()

    async def test_plan_mode_chat_outcome(self):
        ws = await self._connect()
        await ws.send_json({
            "type": "create_plan", "planId": "plan_3", "prompt": "plan chat please",
        })
        chat = await self._next(ws, "gekto_chat")
        assert chat["message"] == "Just chatting"
        assert chat["planId"] == "plan_3"
        await ws.close()

    async def test_create_plan_validation(self):
        ws = await self._connect()
        await ws.send_json({"type": "create_plan", "prompt": "hi"})
        error = await self._next(ws, "error")
        assert "planId" in error["message"]

        await ws.send_json({
            "type": "create_plan", "planId": "p", "prompt": "hi", "mode": "yolo",
        })
        error = await self._next(ws, "error")
        assert "yolo" in error["message"]
        assert self.planner.prompts == []
        await ws.close()

    async def test_direct_mode_never_plans(self):
        ws = await self._connect()
        await ws.send_json({
            "type": "create_plan", "planId": "plan_4", "prompt": "plan a shop",
            "mode": "direct",
        })
        messages = await self._collect_until(ws, lambda m: m["type"] == "gekto_chat")
        assert "plan_created" not in [m["type"] for m in messages]
        assert self.pool.get_plan("plan_4") is None
        await ws.close()

    async def test_planner_state_broadcast_skips_closed_clients(self):
        ws1 = await self._connect()
        ws2 = await self._connect()
        await ws2.close()
        for _ in range(100):
            if len(self.gekto_server.registry) == 1:
                break
            await asyncio.sleep(0.01)

        self.gekto_server._broadcast_planner_state(PlannerState.LOADING)
        message = await ws1.receive_json(timeout=5)
        assert message == {"type": "gekto_state", "state": "loading"}
        assert len(self.gekto_server.registry) == 1
        await ws1.close()

    async def test_delegate_prompt_generates_plan_id(self):
        ws = await self._connect()
        await ws.send_json({
            "type": "delegate_prompt", "prompt": "quick question", "mode": "direct",
        })
        chat = await self._next(ws, "gekto_chat")
        assert chat["planId"].startswith("plan_")
        assert chat["message"] == "Hello back"
        assert self.planner.prompts == [("quick question", PlannerMode.DIRECT)]
        await ws.close()
