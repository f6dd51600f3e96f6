"""Helpers for the ``claude`` CLI stream-json protocol.

The CLI emits one JSON event per line. The ones Gekto cares about:

    {"type": "system", "subtype": "init", ...}          process ready
    {"type": "assistant", "message": {"content": [...]}} tool_use blocks
    {"type": "user", "message": {"content": [...]}}      tool_result blocks
    {"type": "content_block_delta", "delta": {...}}      streamed text
    {"type": "result", "result": "..."}                  end of turn

Two ways to drive it: StreamJsonProcess keeps one process alive and
feeds it user messages on stdin; run_claude_once() runs a single
``-p`` prompt to completion.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from typing import Any, Callable

from .errors import PlannerError

logger = logging.getLogger(__name__)

EventCallback = Callable[[dict[str, Any]], None]
StatusCallback = Callable[[str], None]

STATUS_LOADING = "loading"
STATUS_READY = "ready"
STATUS_ERROR = "error"

# stdout lines from the CLI can carry whole file contents.
_STREAM_LIMIT = 16 * 1024 * 1024


def parse_line(line: str | bytes) -> dict[str, Any] | None:
    """Decode one output line. Non-JSON noise returns None."""
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None
    try:
        event = json.loads(line)
    except json.JSONDecodeError:
        logger.debug("stream-json: ignoring non-JSON line: %.200s", line)
        return None
    return event if isinstance(event, dict) else None


def iter_events(output: str):
    for line in output.splitlines():
        event = parse_line(line)
        if event is not None:
            yield event


def is_init(event: dict[str, Any]) -> bool:
    return event.get("type") == "system" and event.get("subtype") == "init"


def result_text(event: dict[str, Any]) -> str | None:
    if event.get("type") != "result":
        return None
    result = event.get("result")
    return result if isinstance(result, str) else None


def _content_blocks(event: dict[str, Any]) -> list[dict[str, Any]]:
    message = event.get("message")
    if not isinstance(message, dict):
        return []
    content = message.get("content")
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict)]


def tool_uses(event: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
    """(name, input) for every tool_use block of an assistant event."""
    if event.get("type") != "assistant":
        return []
    uses = []
    for block in _content_blocks(event):
        if block.get("type") == "tool_use" and block.get("name"):
            tool_input = block.get("input")
            uses.append((
                str(block["name"]),
                tool_input if isinstance(tool_input, dict) else {},
            ))
    return uses


def tool_result_count(event: dict[str, Any]) -> int:
    if event.get("type") != "user":
        return 0
    return sum(
        1 for block in _content_blocks(event)
        if block.get("type") == "tool_result"
    )


def text_delta(event: dict[str, Any]) -> str | None:
    # Partial-message events arrive either bare or wrapped in stream_event.
    if event.get("type") == "stream_event" and isinstance(event.get("event"), dict):
        event = event["event"]
    if event.get("type") != "content_block_delta":
        return None
    delta = event.get("delta")
    if not isinstance(delta, dict) or delta.get("type") != "text_delta":
        return None
    text = delta.get("text")
    return text if isinstance(text, str) and text else None


def encode_user_message(prompt: str) -> bytes:
    message = {
        "type": "user",
        "message": {"role": "user", "content": prompt},
    }
    return (json.dumps(message) + "\n").encode("utf-8")


def summarize_input(tool_input: dict[str, Any] | None) -> str:
    """Short human label for a tool call's input."""
    if not tool_input:
        return ""
    for key in ("file_path", "pattern"):
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value
    command = tool_input.get("command")
    if isinstance(command, str) and command:
        return command if len(command) <= 50 else command[:50] + "..."
    path = tool_input.get("path")
    if isinstance(path, str) and path:
        return path
    return ""


class StreamJsonProcess:
    """A long-lived ``claude --input-format stream-json`` process.

    Every parsed stdout event goes to ``on_event``. ``status`` is
    "loading" from spawn until the init event, "ready" after it and
    "error" once the process is gone; ``on_status_change`` sees each
    change. The process is respawned ``restart_delay`` seconds after
    it exits, until stop() is called.
    """

    def __init__(
        self,
        name: str,
        command: list[str],
        cwd: str,
        *,
        on_event: EventCallback,
        on_status_change: StatusCallback | None = None,
        restart_delay: float = 1.0,
    ):
        self.name = name
        self.command = list(command)
        self.cwd = cwd
        self.on_event = on_event
        self.on_status_change = on_status_change
        self.restart_delay = restart_delay

        self.status = STATUS_LOADING
        self._proc: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._restart_handle: asyncio.TimerHandle | None = None
        self._restart_task: asyncio.Future | None = None
        self._ready_event = asyncio.Event()
        self._start_lock = asyncio.Lock()
        self._stopping = False

    @property
    def ready(self) -> bool:
        return self.status == STATUS_READY

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self) -> bool:
        """Spawn the process if it is not already running."""
        async with self._start_lock:
            if self.is_running:
                return True
            if self._restart_handle is not None:
                self._restart_handle.cancel()
                self._restart_handle = None
            self._stopping = False
            self._set_status(STATUS_LOADING)
            try:
                proc = await asyncio.create_subprocess_exec(
                    *self.command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=self.cwd,
                    env=dict(os.environ),
                    start_new_session=True,
                    limit=_STREAM_LIMIT,
                )
            except (OSError, ValueError) as exc:
                logger.error(
                    "%s: failed to spawn %s: %s", self.name, self.command[0], exc
                )
                self._set_status(STATUS_ERROR)
                self._schedule_restart()
                return False
            self._proc = proc
            logger.info("%s: spawned (pid=%s)", self.name, proc.pid)
            self._reader_task = asyncio.create_task(
                self._read_stdout(proc), name=f"gekto-{self.name}-stdout"
            )
            self._stderr_task = asyncio.create_task(
                self._read_stderr(proc), name=f"gekto-{self.name}-stderr"
            )
            return True

    async def wait_ready(self, timeout: float) -> bool:
        if self.ready:
            return True
        try:
            await asyncio.wait_for(self._ready_event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.ready

    async def write_user(self, prompt: str) -> None:
        proc = self._proc
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise PlannerError(f"{self.name} process is not running")
        try:
            proc.stdin.write(encode_user_message(prompt))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            raise PlannerError(f"{self.name} stdin closed: {exc}") from exc

    def interrupt(self) -> bool:
        """Send SIGINT to the process group."""
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return False
        try:
            os.killpg(proc.pid, signal.SIGINT)
        except ProcessLookupError:
            return False
        except PermissionError:
            proc.send_signal(signal.SIGINT)
        logger.info("%s: interrupted (pid=%s)", self.name, proc.pid)
        return True

    async def stop(self) -> None:
        """Terminate without respawning."""
        self._stopping = True
        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None
        if self._restart_task is not None and not self._restart_task.done():
            await asyncio.gather(self._restart_task, return_exceptions=True)
            # start() clears the flag.
            self._stopping = True
        proc = self._proc
        if proc is not None and proc.returncode is None:
            if proc.stdin is not None:
                proc.stdin.close()
            try:
                proc.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("%s: did not exit, killing pid=%s", self.name, proc.pid)
                proc.kill()
                await proc.wait()
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                await asyncio.gather(task, return_exceptions=True)
        self._proc = None
        self._ready_event.clear()

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stdout is not None
        while True:
            try:
                line = await proc.stdout.readline()
            except ValueError:
                logger.warning("%s: oversized stdout line dropped", self.name)
                continue
            if not line:
                break
            event = parse_line(line)
            if event is None:
                continue
            if is_init(event):
                logger.info("%s: ready", self.name)
                self._set_status(STATUS_READY)
            try:
                self.on_event(event)
            except Exception:
                logger.exception("%s: event handler failed", self.name)

        returncode = await proc.wait()
        logger.info("%s: exited (rc=%s)", self.name, returncode)
        if self._proc is proc:
            self._proc = None
        if not self._stopping:
            self._set_status(STATUS_ERROR)
            self._schedule_restart()

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        assert proc.stderr is not None
        while True:
            line = await proc.stderr.readline()
            if not line:
                break
            logger.debug(
                "%s stderr: %s", self.name,
                line.decode("utf-8", errors="replace").rstrip(),
            )

    def _schedule_restart(self) -> None:
        if self._stopping or self._restart_handle is not None:
            return
        loop = asyncio.get_running_loop()
        logger.info("%s: restarting in %.1fs", self.name, self.restart_delay)

        def _restart() -> None:
            self._restart_handle = None
            if not self._stopping:
                self._restart_task = asyncio.ensure_future(self.start())

        self._restart_handle = loop.call_later(self.restart_delay, _restart)

    def _set_status(self, status: str) -> None:
        if status == STATUS_READY:
            self._ready_event.set()
        else:
            self._ready_event.clear()
        if status == self.status:
            return
        self.status = status
        if self.on_status_change is None:
            return
        try:
            self.on_status_change(status)
        except Exception:
            logger.exception("%s: status observer failed", self.name)


def build_one_shot_command(
    executable: str | list[str],
    prompt: str,
    *,
    model: str,
    system_prompt: str,
) -> list[str]:
    base = [executable] if isinstance(executable, str) else list(executable)
    return base + [
        "-p", prompt,
        "--output-format", "stream-json",
        "--verbose",
        "--model", model,
        "--system-prompt", system_prompt,
        "--dangerously-skip-permissions",
    ]


async def run_claude_once(
    executable: str | list[str],
    prompt: str,
    *,
    model: str,
    system_prompt: str,
    cwd: str,
    timeout: float = 60.0,
) -> str:
    """Run one prompt to completion and return the result text.

    Raises PlannerError when the process cannot start, times out,
    exits non-zero or produces no result event.
    """
    cmd = build_one_shot_command(
        executable, prompt, model=model, system_prompt=system_prompt
    )
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            start_new_session=True,
        )
    except (OSError, ValueError) as exc:
        raise PlannerError(f"Failed to start {cmd[0]}: {exc}") from exc

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(), timeout=timeout if timeout > 0 else None
        )
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise PlannerError(f"{cmd[0]} timed out after {timeout}s") from exc

    stdout_text = stdout_bytes.decode("utf-8", errors="replace")
    result = None
    for event in iter_events(stdout_text):
        text = result_text(event)
        if text is not None:
            result = text

    if proc.returncode != 0 and result is None:
        error = stderr_bytes.decode("utf-8", errors="replace").strip()
        raise PlannerError(f"{cmd[0]} failed (rc={proc.returncode}): {error}")
    if result is None:
        raise PlannerError(f"{cmd[0]} produced no result")
    return result
