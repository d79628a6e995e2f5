"""Router: binds the controlling terminal to one session at a time.

While attached, terminal input is pumped into the session's process
stdin and the process's stdout/stderr are copied to the terminal.
Attaching to another session detaches the current one first, and the
attachment ends by itself when the process exits.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from typing import BinaryIO

from .errors import SessionNotAttachableError
from .event_bus import Subscription
from .events import OutputReceived, ProcessExited
from .process import ProcessHandle, StreamReader
from .session import Session

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class Router:
    """Exclusive terminal attachment."""

    def __init__(
        self,
        input_reader: StreamReader | None = None,
        output: BinaryIO | None = None,
        error_output: BinaryIO | None = None,
        prefix_output: bool = False,
    ) -> None:
        self._input = input_reader
        self._output = output if output is not None else sys.stdout.buffer
        self._error_output = (
            error_output if error_output is not None else sys.stderr.buffer
        )
        self._prefix_output = prefix_output

        self._active: Session | None = None
        self._subscriptions: list[Subscription] = []
        self._pump_task: asyncio.Task | None = None

    def get_active_session(self) -> str | None:
        return self._active.name if self._active is not None else None

    async def attach(self, session: Session) -> None:
        """Attach the terminal to `session`, detaching any current session.

        Raises:
            SessionNotAttachableError: The session has no live process
                handle. Nothing is subscribed and the current attachment
                is left as it was.
        """
        handle = session.get_handle()
        if handle is None:
            raise SessionNotAttachableError(session.name)

        if self._active is not None:
            await self.detach()

        self._active = session
        self._subscriptions = [
            session.events.subscribe(OutputReceived, self._on_output),
            session.events.subscribe(ProcessExited, self._on_process_exited),
        ]
        if self._input is not None:
            self._pump_task = asyncio.create_task(
                self._pump_input(session, handle),
                name=f"router-input-{session.name}",
            )
        logger.info("Attached terminal to session %s (pid=%d)", session.name, handle.pid)

    async def detach(self) -> None:
        """Remove everything attach() set up. No-op when nothing is attached."""
        session = self._active
        for sub in self._subscriptions:
            sub.unsubscribe()
        self._subscriptions = []

        task = self._pump_task
        self._pump_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self._active = None
        if session is not None:
            logger.info("Detached terminal from session %s", session.name)

    async def _pump_input(self, session: Session, handle: ProcessHandle) -> None:
        assert self._input is not None
        while True:
            data = await self._input.read(READ_CHUNK_SIZE)
            if not data:
                logger.debug("Terminal input closed while attached to %s", session.name)
                return
            if handle.returncode is not None:
                return
            try:
                handle.stdin.write(data)
                await handle.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                logger.debug("stdin of session %s closed", session.name)
                return

    def _on_output(self, event: OutputReceived) -> None:
        target = self._error_output if event.stream == "stderr" else self._output
        data = event.data
        if self._prefix_output:
            data = f"[{event.session_name}] ".encode("utf-8") + data
        target.write(data)
        target.flush()

    async def _on_process_exited(self, event: ProcessExited) -> None:
        if self._active is not None and self._active.name == event.session_name:
            logger.info(
                "Session %s exited (code=%s); detaching terminal",
                event.session_name, event.exit_code,
            )
            await self.detach()


async def open_terminal_reader(stdin=None) -> asyncio.StreamReader:
    """Expose the process's stdin as an asyncio StreamReader for Router."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, stdin or sys.stdin)
    return reader
