"""One interactive assistant process on a pseudo-terminal.

The assistant CLI is a full-screen terminal program, so it runs on a
PTY rather than pipes. Its state is inferred from the output stream:
the input prompt glyph means a turn has finished, a yes/no question
means the CLI is waiting for a permission answer. Process exit is the
only hard signal and always wins.
"""
from __future__ import annotations

import asyncio
import codecs
import fcntl
import logging
import os
import pty
import signal
import struct
import termios
from typing import Callable

from .classifier import (
    OutputClassifier,
    OutputSignal,
    PromptPatternClassifier,
    strip_ansi,
)
from .errors import SessionSpawnError
from .lifecycle import is_valid_transition
from .models import SessionState

logger = logging.getLogger(__name__)

StateCallback = Callable[[str, SessionState], None]
OutputCallback = Callable[[str, str], None]
ReadyCallback = Callable[[str], None]

_READ_CHUNK = 65536


def set_winsize(fd: int, rows: int, cols: int) -> None:
    """Set terminal size using the TIOCSWINSZ ioctl."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


class Session:
    """A single assistant process bound to a pool id.

    Observers are plain callables invoked on the event loop thread:
    ``on_state_change(session_id, state)`` once per actual change,
    ``on_output(session_id, raw_chunk)`` for every chunk, and
    ``on_ready(session_id)`` once, when startup finishes.
    """

    def __init__(
        self,
        session_id: str,
        working_dir: str,
        *,
        command: list[str] | None = None,
        classifier: OutputClassifier | None = None,
        on_state_change: StateCallback | None = None,
        on_output: OutputCallback | None = None,
        on_ready: ReadyCallback | None = None,
        cols: int = 120,
        rows: int = 40,
        turn_timeout_seconds: float = 0.0,
        kill_grace_seconds: float = 5.0,
        env: dict[str, str] | None = None,
    ):
        self.id = session_id
        self.working_dir = working_dir
        self.command = list(command or ["claude"])
        self.classifier = classifier or PromptPatternClassifier()
        self.on_state_change = on_state_change
        self.on_output = on_output
        self.on_ready = on_ready
        self.cols = cols
        self.rows = rows
        self.turn_timeout_seconds = turn_timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.returncode: int | None = None

        self._extra_env = env or {}
        self._state = SessionState.LOADING
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._loop: asyncio.AbstractEventLoop | None = None
        self._proc: asyncio.subprocess.Process | None = None
        self._master_fd: int | None = None
        self._pending_write = bytearray()
        self._writer_registered = False
        self._ready_future: asyncio.Future[bool] | None = None
        self._exit_task: asyncio.Task | None = None
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._terminate_task: asyncio.Task | None = None
        self._ready_fired = False

    @classmethod
    async def create(cls, session_id: str, working_dir: str, **kwargs) -> Session:
        """Construct and start a session. Raises SessionSpawnError."""
        session = cls(session_id, working_dir, **kwargs)
        await session.start()
        return session

    # ── Properties ──────────────────────────────────────────────

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def output_buffer(self) -> str:
        return self._buffer

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc is not None else None

    @property
    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    # ── Process lifecycle ───────────────────────────────────────

    async def start(self) -> None:
        """Spawn the assistant attached to a fresh pseudo-terminal."""
        if self._proc is not None:
            raise RuntimeError(f"Session {self.id} already started")
        loop = asyncio.get_running_loop()
        self._loop = loop
        self._ready_future = loop.create_future()

        master_fd, slave_fd = pty.openpty()
        try:
            set_winsize(slave_fd, self.rows, self.cols)
        except OSError as exc:
            logger.debug("Session %s: TIOCSWINSZ failed: %s", self.id, exc)

        env = dict(os.environ)
        env.update({
            "TERM": "xterm-256color",
            "COLUMNS": str(self.cols),
            "LINES": str(self.rows),
        })
        env.update(self._extra_env)

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=self.working_dir,
                env=env,
                start_new_session=True,
            )
        except (OSError, ValueError) as exc:
            os.close(master_fd)
            os.close(slave_fd)
            logger.error(
                "Session %s: failed to spawn %s in %s: %s",
                self.id, self.command[0], self.working_dir, exc,
            )
            self._set_state(SessionState.ERROR)
            self._resolve_ready(False)
            raise SessionSpawnError(self.id, str(exc)) from exc

        os.close(slave_fd)
        os.set_blocking(master_fd, False)
        self._proc = proc
        self._master_fd = master_fd
        loop.add_reader(master_fd, self._on_readable)
        self._exit_task = asyncio.create_task(
            self._watch_exit(), name=f"gekto-session-exit-{self.id}"
        )
        logger.info(
            "Session %s: spawned %s (pid=%s, cwd=%s)",
            self.id, " ".join(self.command), proc.pid, self.working_dir,
        )

    async def wait_until_ready(self, timeout: float | None = None) -> bool:
        """Wait for startup to finish. False if the process died first."""
        if self._ready_future is None:
            return self._state is not SessionState.ERROR
        try:
            return await asyncio.wait_for(
                asyncio.shield(self._ready_future), timeout
            )
        except asyncio.TimeoutError:
            return False

    async def kill(self, grace_seconds: float | None = None) -> bool:
        """Terminate the process group. True if a live process was stopped."""
        # Deliberate teardown is not reported as a failure.
        self.on_state_change = None
        self.on_output = None
        self.on_ready = None
        self._cancel_turn_timeout()

        proc = self._proc
        if proc is None or proc.returncode is not None:
            self._close_pty()
            return False

        if self._terminate_task is not None and not self._terminate_task.done():
            await asyncio.shield(self._terminate_task)
        else:
            if grace_seconds is None:
                grace_seconds = self.kill_grace_seconds
            await self._terminate(grace_seconds)
        logger.info("Session %s: killed (pid=%s)", self.id, proc.pid)
        return True

    async def _terminate(self, grace_seconds: float) -> None:
        proc = self._proc
        if proc is None:
            return
        self._signal_group(signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Session %s: pid=%s ignored SIGTERM, sending SIGKILL",
                self.id, proc.pid,
            )
            self._signal_group(signal.SIGKILL)
            await proc.wait()
        if self._exit_task is not None:
            await asyncio.shield(self._exit_task)

    def _signal_group(self, sig: int) -> None:
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            if sig == signal.SIGKILL:
                proc.kill()
            else:
                proc.terminate()

    async def _watch_exit(self) -> None:
        assert self._proc is not None
        returncode = await self._proc.wait()
        self.returncode = returncode
        self._drain()
        self._close_pty()
        self._cancel_turn_timeout()
        logger.info("Session %s: process exited (rc=%s)", self.id, returncode)
        self._set_state(SessionState.ERROR)
        self._resolve_ready(False)

    # ── Input ───────────────────────────────────────────────────

    def send(self, text: str) -> None:
        """Start a new turn: clear the buffer and submit *text*."""
        self._set_state(SessionState.WORKING)
        self._buffer = ""
        self._write((text + "\r").encode("utf-8"))

    def respond(self, text: str) -> None:
        """Answer an in-flight prompt without starting a new turn."""
        self._set_state(SessionState.WORKING)
        self._write((text + "\r").encode("utf-8"))

    def reset(self) -> bool:
        """Force the session back to ready without touching the process."""
        self._buffer = ""
        if self._state is SessionState.ERROR:
            return False
        self._set_state(SessionState.READY)
        return True

    def _write(self, data: bytes) -> None:
        if self._master_fd is None:
            logger.warning("Session %s: write dropped, no terminal", self.id)
            return
        self._pending_write.extend(data)
        self._flush_writes()

    def _flush_writes(self) -> None:
        fd = self._master_fd
        while self._pending_write and fd is not None:
            try:
                written = os.write(fd, self._pending_write)
            except BlockingIOError:
                if not self._writer_registered and self._loop is not None:
                    self._loop.add_writer(fd, self._flush_writes)
                    self._writer_registered = True
                return
            except OSError as exc:
                logger.warning("Session %s: write failed: %s", self.id, exc)
                self._pending_write.clear()
                break
            del self._pending_write[:written]
        if self._writer_registered and self._loop is not None and fd is not None:
            self._loop.remove_writer(fd)
            self._writer_registered = False

    # ── Output ──────────────────────────────────────────────────

    def _on_readable(self) -> None:
        fd = self._master_fd
        if fd is None:
            return
        try:
            data = os.read(fd, _READ_CHUNK)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the child side is gone.
            data = b""
        if not data:
            self._remove_reader()
            return
        text = self._decoder.decode(data)
        if text:
            self.feed(text)

    def _drain(self) -> None:
        fd = self._master_fd
        while fd is not None:
            try:
                data = os.read(fd, _READ_CHUNK)
            except OSError:
                break
            if not data:
                break
            text = self._decoder.decode(data)
            if text:
                self.feed(text)
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.feed(tail)

    def feed(self, chunk: str) -> None:
        """Process one decoded chunk of terminal output."""
        self._buffer += chunk
        if self.on_output is not None:
            try:
                self.on_output(self.id, chunk)
            except Exception:
                logger.exception("Session %s: on_output observer failed", self.id)

        cleaned = strip_ansi(chunk)
        for sig in self.classifier.classify(cleaned):
            if sig is OutputSignal.READY:
                if self._state in (SessionState.LOADING, SessionState.WORKING):
                    self._set_state(SessionState.READY)
                # Startup may pass through a trust prompt first.
                if self._state is SessionState.READY:
                    self._fire_ready()
            elif sig is OutputSignal.PERMISSION:
                self._set_state(SessionState.WAITING_INPUT)

    def _fire_ready(self) -> None:
        if self._ready_fired:
            return
        self._ready_fired = True
        self._resolve_ready(True)
        if self.on_ready is not None:
            try:
                self.on_ready(self.id)
            except Exception:
                logger.exception("Session %s: on_ready observer failed", self.id)

    def _resolve_ready(self, value: bool) -> None:
        if self._ready_future is not None and not self._ready_future.done():
            self._ready_future.set_result(value)

    # ── State ───────────────────────────────────────────────────

    def _set_state(self, target: SessionState) -> bool:
        current = self._state
        if target is current:
            return False
        if not is_valid_transition(current, target):
            logger.debug(
                "Session %s: ignoring transition %s -> %s",
                self.id, current.value, target.value,
            )
            return False
        self._state = target
        logger.debug(
            "Session %s: %s -> %s", self.id, current.value, target.value,
        )
        if target is SessionState.WORKING:
            self._arm_turn_timeout()
        else:
            self._cancel_turn_timeout()
        if self.on_state_change is not None:
            try:
                self.on_state_change(self.id, target)
            except Exception:
                logger.exception(
                    "Session %s: on_state_change observer failed", self.id
                )
        return True

    def _arm_turn_timeout(self) -> None:
        self._cancel_turn_timeout()
        if self.turn_timeout_seconds <= 0 or self._loop is None:
            return
        self._timeout_handle = self._loop.call_later(
            self.turn_timeout_seconds, self._on_turn_timeout
        )

    def _cancel_turn_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    def _on_turn_timeout(self) -> None:
        self._timeout_handle = None
        if self._state is not SessionState.WORKING:
            return
        logger.warning(
            "Session %s: turn exceeded %.0fs, terminating",
            self.id, self.turn_timeout_seconds,
        )
        # Started before observers hear about the error so kill() joins it.
        if self.is_running and self._loop is not None:
            self._terminate_task = self._loop.create_task(
                self._terminate(self.kill_grace_seconds),
                name=f"gekto-session-terminate-{self.id}",
            )
        self._set_state(SessionState.ERROR)

    def _remove_reader(self) -> None:
        if self._master_fd is not None and self._loop is not None:
            self._loop.remove_reader(self._master_fd)

    def _close_pty(self) -> None:
        fd = self._master_fd
        if fd is None:
            return
        self._remove_reader()
        if self._writer_registered and self._loop is not None:
            self._loop.remove_writer(fd)
            self._writer_registered = False
        self._master_fd = None
        self._pending_write.clear()
        try:
            os.close(fd)
        except OSError:
            pass
