"""Session: one supervised run of an interactive agent process.

Owns the process handle, drives the run-state machine, and correlates
prompts written to the agent's stdin with the responses read from its
stdout. At most one prompt is in flight at a time.

Response completion is detected by the protocol's explicit completion
signal, or by an idle period with no further output. A prompt whose
caller timed out is "abandoned": its remaining output is discarded up
to its own completion so it is never attributed to a later prompt.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import datetime, timezone

from .config import EngineConfig
from .errors import (
    PromptError,
    PromptTimeoutError,
    SessionBusyError,
    SessionNotRunningError,
)
from .event_bus import EventBus
from .events import (
    OutputReceived,
    ProcessExited,
    PromptCompleted,
    PromptData,
    PromptFailed,
    PromptStarted,
    PromptTimedOut,
    StateChanged,
)
from .lifecycle import validate_transition
from .models import (
    PendingPrompt,
    SessionConfig,
    SessionInfo,
    SessionMetrics,
    SessionState,
)
from .process import ProcessHandle, Spawner, signal_name, spawn_process
from .protocol import PromptProtocol, build_agent_command, get_protocol

logger = logging.getLogger(__name__)

# Extra wait after SIGKILL before the run is considered gone regardless.
KILL_GRACE_SECONDS = 3.0
# How long exit handling waits for stdout to drain before failing a prompt.
DRAIN_TIMEOUT_SECONDS = 1.0


class Session:
    """Wraps one agent process and its prompt/response protocol."""

    def __init__(
        self,
        config: SessionConfig,
        *,
        engine_config: EngineConfig | None = None,
        spawner: Spawner | None = None,
        protocol: PromptProtocol | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        engine_config = engine_config or EngineConfig()
        self._config = config
        self._spawner = spawner or spawn_process
        self._protocol = protocol or get_protocol(engine_config.protocol)
        self._clock = clock
        self._command = build_agent_command(
            config, engine_config.agent_command, self._protocol,
        )
        self._prompt_timeout = (
            config.prompt_timeout_seconds
            if config.prompt_timeout_seconds is not None
            else engine_config.prompt_timeout_seconds
        )
        self._idle_timeout = engine_config.idle_timeout_seconds
        self._shutdown_timeout = engine_config.shutdown_timeout_seconds

        self.events = EventBus(name=config.name)

        self._state = SessionState.STOPPED
        self._handle: ProcessHandle | None = None
        self._pid = 0
        self._started_at: datetime | None = None
        self._started_mono: float | None = None
        self._exit_code: int | None = None
        self._exit_signal: str | None = None
        self._stop_requested = False
        self._exited = asyncio.Event()
        # Clear while start() is in flight.
        self._start_settled = asyncio.Event()
        self._start_settled.set()
        self._io_tasks: list[asyncio.Task] = []

        self._pending: PendingPrompt | None = None
        self._abandoned = 0
        self._idle_task: asyncio.Task | None = None

        self._prompt_count = 0
        self._total_response_ms = 0.0
        self._total_response_chars = 0

        # Survive restarts: the manager reads these to replay and to
        # enforce the restart budget.
        self.last_prompt: str | None = None
        self.retry_count = 0

    # ── Accessors ──

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def exit_signal(self) -> str | None:
        return self._exit_signal

    @property
    def command(self) -> list[str]:
        return list(self._command)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def is_processing(self) -> bool:
        return self._pending is not None

    def get_state(self) -> SessionState:
        return self._state

    def get_handle(self) -> ProcessHandle | None:
        """The live process handle, or None when there is no running process."""
        handle = self._handle
        if self._state != SessionState.RUNNING or handle is None:
            return None
        if handle.returncode is not None:
            return None
        return handle

    def get_info(self) -> SessionInfo:
        return SessionInfo(
            name=self.name,
            pid=self._pid,
            state=self._state,
            started_at=self._started_at,
            working_directory=self._config.working_directory,
            exit_code=self._exit_code,
            permission_mode=self._config.permission_mode,
            tags=list(self._config.tags),
            prompt_count=self._prompt_count,
            retry_count=self.retry_count,
        )

    def get_metrics(self) -> SessionMetrics:
        uptime_ms = 0.0
        if self._started_mono is not None:
            uptime_ms = (self._clock() - self._started_mono) * 1000.0
        return SessionMetrics.from_totals(
            prompt_count=self._prompt_count,
            total_response_time_ms=self._total_response_ms,
            total_response_chars=self._total_response_chars,
            uptime_ms=uptime_ms,
        )

    # ── Lifecycle ──

    async def start(self) -> None:
        """Spawn the agent process and begin reading its output.

        Also used by the manager to begin a new run after a crash.

        Raises:
            SpawnFailedError: The executable could not be launched.
        """
        validate_transition(self._state, SessionState.STARTING)
        self._stop_requested = False
        self._start_settled.clear()
        try:
            await self._transition(SessionState.STARTING)
            await self._spawn_run()
        finally:
            self._start_settled.set()

    async def _spawn_run(self) -> None:
        try:
            handle = await self._spawner(
                self.name,
                self._command,
                self._config.working_directory,
                self._config.env,
            )
        except (Exception, asyncio.CancelledError):
            self._exit_code = None
            self._exit_signal = None
            await self._transition(SessionState.CRASHED)
            raise

        self._handle = handle
        self._pid = handle.pid
        self._started_at = datetime.now(timezone.utc)
        self._started_mono = self._clock()
        self._exit_code = None
        self._exit_signal = None
        self._exited = asyncio.Event()
        self._abandoned = 0
        await self._transition(SessionState.RUNNING)

        stdout_task = asyncio.create_task(
            self._read_stdout(handle), name=f"session-{self.name}-stdout",
        )
        stderr_task = asyncio.create_task(
            self._read_stderr(handle), name=f"session-{self.name}-stderr",
        )
        self._io_tasks = [stdout_task, stderr_task]
        self._io_tasks.append(asyncio.create_task(
            self._watch_exit(handle, stdout_task, stderr_task),
            name=f"session-{self.name}-exit",
        ))

    async def stop(self) -> None:
        """Terminate the process gracefully, escalating to SIGKILL.

        Returns once the process has exited (or the kill grace period
        elapsed). Safe to call on a stopped or crashed session.
        """
        if self._state == SessionState.STOPPED:
            return
        if self._state == SessionState.STARTING:
            # Stop the run as soon as the spawn settles.
            self._stop_requested = True
            await self._start_settled.wait()
            await self.stop()
            return
        if self._state == SessionState.STOPPING:
            await self._exited.wait()
            return
        handle = self._handle
        if self._state == SessionState.CRASHED or handle is None:
            if self._state == SessionState.CRASHED:
                await self._transition(SessionState.STOPPED)
            return

        # Recorded before signalling so the exit handler sees a requested stop.
        self._stop_requested = True
        await self._transition(SessionState.STOPPING)
        handle.terminate()

        try:
            await asyncio.wait_for(
                self._exited.wait(), timeout=self._shutdown_timeout,
            )
            return
        except asyncio.TimeoutError:
            logger.warning(
                "Session %s (pid=%d) ignored SIGTERM for %.1fs; sending SIGKILL",
                self.name, self._pid, self._shutdown_timeout,
            )
            handle.kill()

        try:
            await asyncio.wait_for(
                self._exited.wait(), timeout=KILL_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Session %s (pid=%d) did not exit after SIGKILL; abandoning it",
                self.name, self._pid,
            )
            for task in self._io_tasks:
                task.cancel()
            await self._finish_run(handle, None)

    # ── Prompts ──

    async def send_prompt(self, text: str) -> str:
        """Send one prompt and wait for its complete response.

        Raises:
            ValueError: Empty prompt text.
            SessionNotRunningError: No running process.
            SessionBusyError: Another prompt is still pending.
            PromptTimeoutError: No completion within the prompt timeout.
                The process is left running.
            PromptError: The process exited before the response completed.
        """
        if not text or not text.strip():
            raise ValueError("prompt text must be non-empty")
        handle = self.get_handle()
        if handle is None:
            raise SessionNotRunningError(self.name, self._state.value)
        if self._pending is not None:
            raise SessionBusyError(self.name)

        loop = asyncio.get_running_loop()
        pending = PendingPrompt(
            text=text,
            submitted_at=self._clock(),
            future=loop.create_future(),
        )
        self._pending = pending
        self.last_prompt = text

        await self.events.publish(PromptStarted(session_name=self.name, text=text))

        try:
            handle.stdin.write(self._protocol.encode_prompt(text))
            await handle.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            error = PromptError(self.name, f"stdin closed: {exc}")
            if self._pending is pending:
                self._pending = None
            if not pending.future.done():
                pending.future.cancel()
            await self.events.publish(PromptFailed(session_name=self.name, error=error))
            raise error from exc

        timeout = self._prompt_timeout
        try:
            if timeout and timeout > 0:
                return await asyncio.wait_for(
                    asyncio.shield(pending.future), timeout=timeout,
                )
            return await asyncio.shield(pending.future)
        except asyncio.TimeoutError:
            if pending.future.done() and not pending.future.cancelled():
                return pending.future.result()
            partial = self._abandon(pending)
            error = PromptTimeoutError(self.name, timeout, text)
            logger.warning(
                "Prompt timed out in session %s after %.1fs (%d chars received)",
                self.name, timeout, len(partial),
            )
            await self.events.publish(PromptTimedOut(
                session_name=self.name,
                timeout_seconds=timeout,
                prompt_text=text,
                partial_response=partial,
            ))
            await self.events.publish(PromptFailed(session_name=self.name, error=error))
            raise error from None
        except asyncio.CancelledError:
            if self._pending is pending:
                self._abandon(pending)
            raise

    def _abandon(self, pending: PendingPrompt) -> str:
        """Give up on a pending prompt without touching the process."""
        if self._pending is pending:
            self._pending = None
            self._abandoned += 1
        if not pending.future.done():
            pending.future.cancel()
        return pending.response

    async def _complete_pending(self, pending: PendingPrompt) -> None:
        if self._pending is not pending or pending.future.done():
            return
        self._pending = None
        self._cancel_idle_timer()
        elapsed_ms = (self._clock() - pending.submitted_at) * 1000.0
        text = pending.response
        self._prompt_count += 1
        self._total_response_ms += elapsed_ms
        self._total_response_chars += len(text)
        logger.debug(
            "Prompt completed in session %s: %d chars in %.0fms",
            self.name, len(text), elapsed_ms,
        )
        await self.events.publish(PromptCompleted(
            session_name=self.name, text=text, response_time_ms=elapsed_ms,
        ))
        pending.future.set_result(text)

    # ── Output handling ──

    async def _read_stdout(self, handle: ProcessHandle) -> None:
        while True:
            try:
                line = await handle.stdout.readline()
            except ValueError as exc:
                # readline() has already dropped the oversized line.
                if handle is self._handle:
                    await self._fail_oversized_line(exc)
                continue
            if not line:
                break
            await self.events.publish(OutputReceived(
                session_name=self.name, stream="stdout", data=line,
            ))
            if handle is self._handle:
                await self._handle_output_line(line)

    async def _fail_oversized_line(self, exc: ValueError) -> None:
        logger.warning(
            "Session %s: dropped an output line over the stream limit (%s)",
            self.name, exc,
        )
        pending = self._pending
        if pending is None:
            return
        # The rest of this response is discarded like a timed-out prompt's.
        self._pending = None
        self._abandoned += 1
        self._arm_idle_timer()
        error = PromptError(self.name, "response line exceeded the stream limit")
        if not pending.future.done():
            pending.future.set_exception(error)
        await self.events.publish(PromptFailed(session_name=self.name, error=error))

    async def _read_stderr(self, handle: ProcessHandle) -> None:
        while True:
            try:
                chunk = await handle.stderr.readline()
            except ValueError:
                logger.debug("Session %s: dropped an oversized stderr line", self.name)
                continue
            if not chunk:
                break
            logger.debug(
                "Session %s stderr: %s",
                self.name, chunk.decode("utf-8", errors="replace").rstrip(),
            )
            await self.events.publish(OutputReceived(
                session_name=self.name, stream="stderr", data=chunk,
            ))

    async def _handle_output_line(self, line: bytes) -> None:
        parsed = self._protocol.parse_line(line)

        if self._abandoned:
            if parsed.done:
                self._abandoned -= 1
                self._cancel_idle_timer()
                logger.debug(
                    "Discarded late response of an abandoned prompt in %s",
                    self.name,
                )
            elif parsed.text:
                self._arm_idle_timer()
            return

        pending = self._pending
        if pending is None:
            # Unsolicited output, e.g. from an attached terminal.
            return
        if parsed.text:
            pending.chunks.append(parsed.text)
            await self.events.publish(PromptData(
                session_name=self.name, chunk=parsed.text,
            ))
            self._arm_idle_timer()
        if parsed.done:
            await self._complete_pending(pending)

    def _arm_idle_timer(self) -> None:
        self._cancel_idle_timer()
        if self._idle_timeout <= 0:
            return
        self._idle_task = asyncio.create_task(
            self._idle_expired(), name=f"session-{self.name}-idle",
        )

    def _cancel_idle_timer(self) -> None:
        task = self._idle_task
        self._idle_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _idle_expired(self) -> None:
        await asyncio.sleep(self._idle_timeout)
        self._idle_task = None
        if self._abandoned:
            self._abandoned -= 1
            return
        if self._pending is not None:
            await self._complete_pending(self._pending)

    # ── Exit handling ──

    async def _watch_exit(
        self,
        handle: ProcessHandle,
        stdout_task: asyncio.Task,
        stderr_task: asyncio.Task,
    ) -> None:
        returncode = await handle.wait()
        # Let trailing output land before a pending prompt is failed.
        await asyncio.wait(
            {stdout_task, stderr_task}, timeout=DRAIN_TIMEOUT_SECONDS,
        )
        await self._finish_run(handle, returncode)

    async def _finish_run(
        self, handle: ProcessHandle, returncode: int | None,
    ) -> None:
        if handle is not self._handle:
            return
        self._handle = None
        self._cancel_idle_timer()
        self._abandoned = 0
        if returncode is not None and returncode >= 0:
            self._exit_code = returncode
        else:
            self._exit_code = None
        self._exit_signal = signal_name(returncode)
        expected = self._stop_requested

        pending = self._pending
        self._pending = None
        if pending is not None and not pending.future.done():
            error = PromptError(
                self.name,
                f"process exited (code={self._exit_code}, "
                f"signal={self._exit_signal})",
            )
            pending.future.set_exception(error)
            await self.events.publish(PromptFailed(session_name=self.name, error=error))

        if expected:
            await self._transition(SessionState.STOPPED)
            logger.info("Session %s stopped (pid=%d)", self.name, self._pid)
        else:
            await self._transition(SessionState.CRASHED)
            logger.warning(
                "Session %s exited unexpectedly (pid=%d, code=%s, signal=%s)",
                self.name, self._pid, self._exit_code, self._exit_signal,
            )

        self._exited.set()
        await self.events.publish(ProcessExited(
            session_name=self.name,
            pid=self._pid,
            exit_code=self._exit_code,
            signal=self._exit_signal,
            expected=expected,
        ))

    async def _transition(self, target: SessionState) -> None:
        validate_transition(self._state, target)
        old = self._state
        self._state = target
        logger.info("Session %s: %s -> %s", self.name, old.value, target.value)
        await self.events.publish(StateChanged(
            session_name=self.name, old_state=old.value, new_state=target.value,
        ))
