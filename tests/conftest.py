"""Shared fixtures: a fake agent process and a spawner that hands them out."""

from __future__ import annotations

import asyncio
import json
import signal
from collections.abc import Callable
from pathlib import Path

import pytest

from agentspawn.engine.config import EngineConfig
from agentspawn.engine.errors import SpawnFailedError
from agentspawn.engine.manager import SessionManager
from agentspawn.engine.models import SessionConfig
from agentspawn.engine.process import ProcessHandle


def assistant_line(text: str) -> str:
    return json.dumps({
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": text}]},
    }) + "\n"


def result_line() -> str:
    return json.dumps({"type": "result", "subtype": "success"}) + "\n"


class FakeStdin:
    def __init__(self, on_write: Callable[[bytes], None] | None = None) -> None:
        self.writes: list[bytes] = []
        self.closed = False
        self.broken = False
        self._on_write = on_write

    def write(self, data: bytes) -> None:
        if self.broken:
            raise BrokenPipeError("stdin closed")
        self.writes.append(data)
        if self._on_write is not None:
            self._on_write(data)

    async def drain(self) -> None:
        await asyncio.sleep(0)

    def close(self) -> None:
        self.closed = True

    def prompts(self) -> list[str]:
        """Prompt texts written in stream-json form."""
        texts = []
        for raw in self.writes:
            for line in raw.decode().splitlines():
                if line.strip():
                    texts.append(json.loads(line)["message"]["content"])
        return texts


class FakeProcessHandle(ProcessHandle):
    """In-memory agent process.

    `responder` receives each prompt text and returns the stdout lines
    to emit for it (or None to stay silent).
    """

    def __init__(
        self,
        pid: int,
        responder: Callable[[str], list[str] | None] | None = None,
        ignore_sigterm: bool = False,
        stream_limit: int = 2 ** 16,
    ) -> None:
        self._pid = pid
        self._returncode: int | None = None
        self._exited = asyncio.Event()
        self._stdout = asyncio.StreamReader(limit=stream_limit)
        self._stderr = asyncio.StreamReader()
        self._stdin = FakeStdin(self._handle_write)
        self.responder = responder
        self.ignore_sigterm = ignore_sigterm
        self.signals: list[int] = []

    @property
    def pid(self) -> int:
        return self._pid

    @property
    def stdin(self) -> FakeStdin:
        return self._stdin

    @property
    def stdout(self) -> asyncio.StreamReader:
        return self._stdout

    @property
    def stderr(self) -> asyncio.StreamReader:
        return self._stderr

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        if self._returncode is not None:
            return
        if sig == signal.SIGTERM and self.ignore_sigterm:
            return
        self.exit(-int(sig))

    async def wait(self) -> int:
        await self._exited.wait()
        assert self._returncode is not None
        return self._returncode

    # ── Test controls ──

    def emit(self, *lines: str) -> None:
        for line in lines:
            self._stdout.feed_data(line.encode("utf-8"))

    def emit_stderr(self, text: str) -> None:
        self._stderr.feed_data(text.encode("utf-8"))

    def exit(self, code: int) -> None:
        if self._returncode is not None:
            return
        self._returncode = code
        self._stdout.feed_eof()
        self._stderr.feed_eof()
        self._exited.set()

    def _handle_write(self, data: bytes) -> None:
        if self.responder is None:
            return
        for line in data.decode("utf-8").splitlines():
            if not line.strip():
                continue
            text = json.loads(line)["message"]["content"]
            lines = self.responder(text)
            if lines:
                self.emit(*lines)


def echo_responder(text: str) -> list[str]:
    return [assistant_line(f"echo: {text}"), result_line()]


class FakeSpawner:
    """Spawner that records calls and returns FakeProcessHandles."""

    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.handles: list[FakeProcessHandle] = []
        self.responder: Callable[[str], list[str] | None] | None = None
        self.ignore_sigterm = False
        self.fail_reason: str | None = None
        self.stream_limit = 2 ** 16
        self._next_pid = 40000

    async def __call__(
        self,
        session_name: str,
        argv: list[str],
        cwd: str,
        env: dict[str, str] | None = None,
    ) -> FakeProcessHandle:
        self.calls.append({
            "session_name": session_name, "argv": list(argv), "cwd": cwd, "env": env,
        })
        if self.fail_reason is not None:
            raise SpawnFailedError(session_name, self.fail_reason)
        self._next_pid += 1
        handle = FakeProcessHandle(
            self._next_pid,
            responder=self.responder,
            ignore_sigterm=self.ignore_sigterm,
            stream_limit=self.stream_limit,
        )
        self.handles.append(handle)
        return handle

    def latest(self) -> FakeProcessHandle:
        return self.handles[-1]


class GatedSpawner(FakeSpawner):
    """FakeSpawner whose spawns block until `gate` is set."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = asyncio.Event()
        self.waiting = 0

    async def __call__(self, *args, **kwargs) -> FakeProcessHandle:
        self.waiting += 1
        try:
            await self.gate.wait()
        finally:
            self.waiting -= 1
        return await super().__call__(*args, **kwargs)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until `predicate()` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def make_config(name: str, tmp_path: Path, **kwargs) -> SessionConfig:
    return SessionConfig(name=name, working_directory=str(tmp_path), **kwargs)


@pytest.fixture
def engine_config(tmp_path) -> EngineConfig:
    return EngineConfig(
        registry_path=str(tmp_path / "sessions.json"),
        hooks_path=str(tmp_path / "hooks.json"),
        shutdown_timeout_seconds=0.2,
        prompt_timeout_seconds=5.0,
        idle_timeout_seconds=0.0,
        lock_timeout_seconds=0.5,
        agent_command=["fake-agent"],
    )


@pytest.fixture
def spawner() -> FakeSpawner:
    return FakeSpawner()


@pytest.fixture
def manager(engine_config, spawner) -> SessionManager:
    return SessionManager(engine_config, spawner=spawner, backoff=lambda attempt: 0.0)
