"""Persistent planner: the "master" assistant behind the widget chat.

Two long-lived stream-json processes:

- a fast classifier that labels each request "direct" or "plan";
- a worker that answers direct requests with file tools enabled.

Plan-labelled requests return immediately so the caller can run the
task breakdown (see plan_tools.py). One planner exists per server; it
is created by the server and injected wherever it is needed.
"""
from __future__ import annotations

import asyncio
import logging
import shlex
import time
from typing import Any, Callable

from .config import GektoConfig
from .errors import PlannerError, PlannerUnavailableError
from .models import PlannerCallbacks, PlannerMode, PlannerResult, PlannerState
from .stream_json import (
    STATUS_ERROR,
    STATUS_LOADING,
    STATUS_READY,
    StreamJsonProcess,
    result_text,
    text_delta,
    tool_result_count,
    tool_uses,
)

logger = logging.getLogger(__name__)

StateCallback = Callable[[PlannerState], None]

CLASSIFIER_PROMPT = """You classify user messages. Return ONLY one word: "direct" or "plan".

- direct: Simple tasks, greetings, questions, single-file changes, quick fixes
- plan: Complex tasks, multi-file features, OR any request to spawn/create agents/lizards/workers

IMPORTANT: Any request mentioning "spawn", "create agents", "make lizards", "workers", "parallel agents" -> ALWAYS plan

Examples:
"hey" -> direct
"what time is it" -> direct
"add a button to header" -> direct
"fix the typo in readme" -> direct
"refactor the auth system" -> plan
"build a shopping cart with checkout" -> plan
"split this into 3 agents" -> plan
"spawn 5 agents" -> plan
"create workers for this" -> plan
"use parallel agents" -> plan

Respond with ONLY "direct" or "plan", nothing else."""

WORKER_SYSTEM_PROMPT = """You are Gekto, a friendly and capable coding assistant. You help users with their coding tasks directly.

Be concise and helpful. When you need to make changes, use the available tools. Explain what you're doing briefly.

For greetings and questions, just respond naturally without using tools.

IMPORTANT: You can ONLY use Read, Write, Edit, Glob, and Grep tools. You CANNOT use Bash or Task tools - they are disabled."""

MSG_STARTING = "Gekto is starting up, please try again."
MSG_TIMEOUT = "Task timed out. Please try breaking it into smaller steps."
MSG_RESTARTING = "Process restarting, please try again."
MSG_STOPPED = "Stopped."
MSG_PLANNING = "Creating plan..."
MSG_FAILED = "Hey! Something went wrong on my end. Could you try again?"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _safe_call(fn: Callable[..., Any] | None, *args: Any) -> None:
    if fn is None:
        return
    try:
        fn(*args)
    except Exception:
        logger.exception("Planner: callback %s failed", getattr(fn, "__name__", fn))


class PersistentPlanner:
    """Singleton-per-server planner. See module docstring."""

    def __init__(self, config: GektoConfig | None = None):
        self.config = config or GektoConfig()
        self._state = PlannerState.LOADING
        self._on_state: StateCallback | None = None
        self._initialized = False
        self._working_dir = self.config.working_dir

        self._worker: StreamJsonProcess | None = None
        self._classifier: StreamJsonProcess | None = None

        self._turn_lock = asyncio.Lock()
        self._classify_lock = asyncio.Lock()
        self._pending_turn: asyncio.Future[str] | None = None
        self._pending_classify: asyncio.Future[str] | None = None
        # Results still owed by the process for turns we gave up on.
        self._stale_turns = 0
        self._stale_classifications = 0
        self._callbacks: PlannerCallbacks | None = None
        self._current_tool: tuple[str, dict[str, Any]] | None = None

    @property
    def state(self) -> PlannerState:
        return self._state

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def busy(self) -> bool:
        return self._pending_turn is not None and not self._pending_turn.done()

    # ── Commands ────────────────────────────────────────────────

    def _base_command(self) -> list[str]:
        return shlex.split(self.config.planner_command)

    def build_worker_command(self) -> list[str]:
        return self._base_command() + [
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
            "--model", self.config.planner_model,
            "--system-prompt", WORKER_SYSTEM_PROMPT,
            "--dangerously-skip-permissions",
            "--disallowed-tools", "Bash", "Task",
        ]

    def build_classifier_command(self) -> list[str]:
        return self._base_command() + [
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
            "--model", self.config.classifier_model,
            "--system-prompt", CLASSIFIER_PROMPT,
            "--dangerously-skip-permissions",
        ]

    # ── Lifecycle ───────────────────────────────────────────────

    async def init(
        self,
        working_dir: str,
        on_state: StateCallback | None = None,
    ) -> bool:
        """Spawn both processes. Only the first call has any effect."""
        if self._initialized:
            logger.debug("Planner: init called again, ignoring")
            return False
        self._initialized = True
        self._working_dir = working_dir
        self._on_state = on_state

        restart_delay = self.config.planner_restart_delay_seconds
        self._classifier = StreamJsonProcess(
            "planner-classifier",
            self.build_classifier_command(),
            working_dir,
            on_event=self._on_classifier_event,
            on_status_change=self._on_classifier_status,
            restart_delay=restart_delay,
        )
        self._worker = StreamJsonProcess(
            "planner-worker",
            self.build_worker_command(),
            working_dir,
            on_event=self._on_worker_event,
            on_status_change=self._on_worker_status,
            restart_delay=restart_delay,
        )
        logger.info("Planner: starting in %s", working_dir)
        await self._classifier.start()
        await self._worker.start()
        self._update_state()
        return True

    async def shutdown(self) -> None:
        self._resolve(self._pending_turn, MSG_STOPPED)
        self._resolve(self._pending_classify, PlannerMode.DIRECT.value)
        for proc in (self._worker, self._classifier):
            if proc is not None:
                await proc.stop()
        logger.info("Planner: shut down")

    def abort(self) -> bool:
        """Interrupt the in-flight worker turn, if any."""
        fut = self._pending_turn
        if fut is None or fut.done():
            return False
        if self._worker is not None:
            self._worker.interrupt()
        self._stale_turns += 1
        fut.set_result(MSG_STOPPED)
        logger.info("Planner: turn aborted")
        return True

    # ── Requests ────────────────────────────────────────────────

    async def send(
        self,
        prompt: str,
        mode: PlannerMode | str = PlannerMode.PLAN,
        callbacks: PlannerCallbacks | None = None,
    ) -> PlannerResult:
        """Answer or triage *prompt*. Never raises."""
        callbacks = callbacks or PlannerCallbacks()
        classify_ms = 0
        try:
            mode = PlannerMode(mode)
            if mode is PlannerMode.PLAN:
                mode, classify_ms = await self._classify(prompt)
                logger.info("Planner: classified as %s in %dms", mode.value, classify_ms)
            _safe_call(callbacks.on_classified, mode)

            if mode is PlannerMode.PLAN:
                return PlannerResult(PlannerMode.PLAN, MSG_PLANNING, classify_ms)

            started = time.monotonic()
            message = await self._run_turn(prompt, callbacks)
            return PlannerResult(
                PlannerMode.DIRECT, message, classify_ms, _elapsed_ms(started)
            )
        except PlannerUnavailableError as exc:
            logger.warning("Planner: %s", exc)
            return PlannerResult(PlannerMode.DIRECT, MSG_STARTING, classify_ms)
        except Exception:
            logger.exception("Planner: send failed")
            return PlannerResult(PlannerMode.DIRECT, MSG_FAILED, classify_ms)

    async def _classify(self, prompt: str) -> tuple[PlannerMode, int]:
        started = time.monotonic()
        proc = self._classifier
        if proc is None:
            return PlannerMode.DIRECT, 0

        timeout = self.config.classifier_timeout_seconds
        async with self._classify_lock:
            if not proc.ready:
                await proc.start()
                if not await proc.wait_ready(timeout):
                    logger.warning("Planner: classifier not ready, assuming direct")
                    return PlannerMode.DIRECT, _elapsed_ms(started)

            fut = asyncio.get_running_loop().create_future()
            self._pending_classify = fut
            try:
                await proc.write_user(prompt)
                result = await asyncio.wait_for(fut, timeout if timeout > 0 else None)
            except asyncio.TimeoutError:
                logger.warning("Planner: classifier timed out after %.0fs", timeout)
                self._stale_classifications += 1
                result = PlannerMode.DIRECT.value
            except PlannerError as exc:
                logger.warning("Planner: classifier failed: %s", exc)
                result = PlannerMode.DIRECT.value
            finally:
                self._pending_classify = None

        mode = PlannerMode.PLAN if "plan" in result.lower() else PlannerMode.DIRECT
        return mode, _elapsed_ms(started)

    async def _run_turn(self, prompt: str, callbacks: PlannerCallbacks) -> str:
        proc = self._worker
        if proc is None:
            raise PlannerUnavailableError(self._state.value)

        async with self._turn_lock:
            if not proc.ready:
                await proc.start()
                if not await proc.wait_ready(self.config.planner_startup_timeout_seconds):
                    raise PlannerUnavailableError(self._state.value)

            fut = asyncio.get_running_loop().create_future()
            self._pending_turn = fut
            self._callbacks = callbacks
            self._current_tool = None
            timeout = self.config.planner_turn_timeout_seconds
            try:
                await proc.write_user(prompt)
                return await asyncio.wait_for(fut, timeout if timeout > 0 else None)
            except asyncio.TimeoutError:
                logger.warning("Planner: turn timed out after %.0fs", timeout)
                self._stale_turns += 1
                return MSG_TIMEOUT
            except asyncio.CancelledError:
                if not fut.done() or fut.cancelled():
                    self._stale_turns += 1
                raise
            finally:
                self._pending_turn = None
                self._callbacks = None
                self._current_tool = None

    # ── Process events ──────────────────────────────────────────

    def _on_worker_event(self, event: dict[str, Any]) -> None:
        callbacks = self._callbacks
        for name, tool_input in tool_uses(event):
            self._current_tool = (name, tool_input)
            if callbacks is not None:
                _safe_call(callbacks.on_tool_start, name, tool_input)

        if tool_result_count(event) and self._current_tool is not None:
            name, tool_input = self._current_tool
            self._current_tool = None
            if callbacks is not None:
                _safe_call(callbacks.on_tool_end, name, tool_input)

        text = text_delta(event)
        if text and callbacks is not None:
            _safe_call(callbacks.on_text, text)

        result = result_text(event)
        if result is not None:
            if self._stale_turns > 0:
                self._stale_turns -= 1
                logger.debug("Planner: discarding late worker result")
                return
            self._resolve(self._pending_turn, result)

    def _on_classifier_event(self, event: dict[str, Any]) -> None:
        result = result_text(event)
        if result is None:
            return
        if self._stale_classifications > 0:
            self._stale_classifications -= 1
            return
        self._resolve(self._pending_classify, result)

    def _on_worker_status(self, status: str) -> None:
        if status != STATUS_READY:
            self._stale_turns = 0
        if status == STATUS_ERROR:
            self._resolve(self._pending_turn, MSG_RESTARTING)
        self._update_state()

    def _on_classifier_status(self, status: str) -> None:
        if status != STATUS_READY:
            self._stale_classifications = 0
        if status == STATUS_ERROR:
            self._resolve(self._pending_classify, PlannerMode.DIRECT.value)
        self._update_state()

    @staticmethod
    def _resolve(fut: asyncio.Future | None, value: str) -> None:
        if fut is not None and not fut.done():
            fut.set_result(value)

    # ── State ───────────────────────────────────────────────────

    def _compute_state(self) -> PlannerState:
        worker = self._worker.status if self._worker else STATUS_LOADING
        classifier = self._classifier.status if self._classifier else STATUS_LOADING
        if worker == STATUS_ERROR:
            return PlannerState.ERROR
        if worker == STATUS_READY and classifier != STATUS_LOADING:
            return PlannerState.READY
        return PlannerState.LOADING

    def _update_state(self) -> None:
        state = self._compute_state()
        if state is self._state:
            return
        logger.info("Planner: %s -> %s", self._state.value, state.value)
        self._state = state
        _safe_call(self._on_state, state)
