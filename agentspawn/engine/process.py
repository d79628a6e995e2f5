"""Narrow process-handle abstraction over the agent subprocess.

Session logic talks only to ProcessHandle, so tests can substitute a
fake handle. The real implementation wraps asyncio.subprocess.Process
(array-based exec, no shell).
"""
from __future__ import annotations

import abc
import asyncio
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from typing import Protocol

from .errors import SpawnFailedError

logger = logging.getLogger(__name__)

# Per-line buffer limit for the agent's pipes. Single stream-json events
# carrying long answers or tool results run far past asyncio's 64 KiB default.
STREAM_LIMIT_BYTES = 16 * 1024 * 1024


class StreamWriter(Protocol):
    def write(self, data: bytes) -> None: ...
    async def drain(self) -> None: ...
    def close(self) -> None: ...


class StreamReader(Protocol):
    async def readline(self) -> bytes: ...
    async def read(self, n: int = -1) -> bytes: ...


class ProcessHandle(abc.ABC):
    """One spawned process: three byte streams and a lifecycle."""

    @property
    @abc.abstractmethod
    def pid(self) -> int:
        """OS process identifier."""

    @property
    @abc.abstractmethod
    def stdin(self) -> StreamWriter:
        ...

    @property
    @abc.abstractmethod
    def stdout(self) -> StreamReader:
        ...

    @property
    @abc.abstractmethod
    def stderr(self) -> StreamReader:
        ...

    @property
    @abc.abstractmethod
    def returncode(self) -> int | None:
        """Exit status once the process has exited, else None.

        Negative values mean the process died from signal -N.
        """

    @abc.abstractmethod
    def send_signal(self, sig: int) -> None:
        ...

    @abc.abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return its returncode."""

    def terminate(self) -> None:
        self.send_signal(signal.SIGTERM)

    def kill(self) -> None:
        self.send_signal(signal.SIGKILL)


class AsyncioProcessHandle(ProcessHandle):
    """ProcessHandle backed by asyncio.subprocess.Process."""

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def stdin(self) -> StreamWriter:
        return self._proc.stdin  # type: ignore[return-value]

    @property
    def stdout(self) -> StreamReader:
        return self._proc.stdout  # type: ignore[return-value]

    @property
    def stderr(self) -> StreamReader:
        return self._proc.stderr  # type: ignore[return-value]

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    def send_signal(self, sig: int) -> None:
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            logger.debug("Signal %s to pid=%d: already gone", sig, self.pid)

    async def wait(self) -> int:
        return await self._proc.wait()


Spawner = Callable[
    [str, list[str], str, "dict[str, str] | None"], Awaitable[ProcessHandle]
]


async def spawn_process(
    session_name: str,
    argv: list[str],
    cwd: str,
    env: dict[str, str] | None = None,
) -> ProcessHandle:
    """Launch `argv` in `cwd` with piped stdin/stdout/stderr.

    `env` entries are layered over the current environment.

    Raises:
        SpawnFailedError: The executable is missing, not permitted,
            or the working directory does not exist.
    """
    merged_env = {**os.environ, **(env or {})}
    try:
        # Array exec, no shell.
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=merged_env,
            start_new_session=True,
            limit=STREAM_LIMIT_BYTES,
        )
    except FileNotFoundError as exc:
        missing = exc.filename or argv[0]
        raise SpawnFailedError(session_name, f"not found: {missing}") from exc
    except PermissionError as exc:
        raise SpawnFailedError(
            session_name, f"permission denied: {argv[0]}"
        ) from exc
    except NotADirectoryError as exc:
        raise SpawnFailedError(
            session_name, f"not a directory: {cwd}"
        ) from exc

    logger.info(
        "Spawned %s for session %s (pid=%d, cwd=%s)",
        argv[0], session_name, proc.pid, cwd,
    )
    return AsyncioProcessHandle(proc)


def signal_name(returncode: int | None) -> str | None:
    """Name of the signal that killed a process, from its returncode."""
    if returncode is None or returncode >= 0:
        return None
    try:
        return signal.Signals(-returncode).name
    except ValueError:
        return f"SIG{-returncode}"
