"""Session manager: creates, tracks, restarts and stops sessions.

The in-memory directory of live Session objects for this invocation.
Enforces name uniqueness, applies each session's restart policy on
unexpected exits, and keeps the durable Registry in step with what it
tracks. Registry I/O is blocking and runs in a worker thread.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from agentspawn.shared.services.process_cleanup import is_process_alive

from .config import EngineConfig
from .errors import (
    AgentSpawnError,
    RegistryCorruptError,
    RegistryLockError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
    SpawnFailedError,
)
from .event_bus import EventBus, Subscription
from .events import (
    ProcessExited,
    PromptCompleted,
    RestartCancelled,
    SessionCrashed,
    SessionRestarted,
    SessionStarted,
    SessionStopped,
)
from .models import RegistryEntry, SessionConfig, SessionInfo, SessionState
from .process import Spawner
from .protocol import PromptProtocol
from .registry import Registry
from .restart_policy import ExitClassification, calculate_backoff, classify_exit
from .session import Session

logger = logging.getLogger(__name__)

BackoffFn = Callable[[int], float]

_LIVE_STATES = frozenset({SessionState.STARTING, SessionState.RUNNING})


@dataclass
class BroadcastResult:
    """Outcome of one session's share of a broadcast prompt."""
    session_name: str
    response: str | None = None
    error: Exception | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class SessionManager:
    """Owns every Session started by this invocation.

    Sessions started by other invocations are visible (read-only)
    through the registry snapshot taken by init() / refresh_registry().
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        registry: Registry | None = None,
        spawner: Spawner | None = None,
        protocol: PromptProtocol | None = None,
        backoff: BackoffFn = calculate_backoff,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or EngineConfig()
        self._registry = registry or Registry(
            self._config.resolved_registry_path,
            lock_timeout_seconds=self._config.lock_timeout_seconds,
        )
        self._spawner = spawner
        self._protocol = protocol
        self._backoff = backoff
        self._clock = clock

        self.events = EventBus(name="manager")

        self._sessions: dict[str, Session] = {}
        self._exit_subs: dict[str, list[Subscription]] = {}
        # Names whose registry entry this invocation has written.
        self._recorded: set[str] = set()
        self._restart_tasks: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        # Registry entries owned by other invocations, from the last snapshot.
        self._external: dict[str, RegistryEntry] = {}

    @property
    def registry(self) -> Registry:
        return self._registry

    @property
    def config(self) -> EngineConfig:
        return self._config

    # ── Registry reconciliation ──

    async def init(self) -> None:
        """Reconcile the registry with reality.

        Entries still recorded as live whose pid is gone are rewritten as
        crashed, so a previous invocation that died without cleaning up
        does not leave phantom running sessions behind.
        """

        def _reconcile(entries: dict[str, RegistryEntry]) -> dict[str, RegistryEntry]:
            for entry in entries.values():
                if entry.state in _LIVE_STATES and not is_process_alive(entry.pid):
                    logger.info(
                        "Registry: %s (pid=%d) is no longer alive; marking crashed",
                        entry.name, entry.pid,
                    )
                    entry.state = SessionState.CRASHED
            return dict(entries)

        entries = await asyncio.to_thread(self._registry.update, _reconcile)
        self._external = {
            name: entry for name, entry in entries.items()
            if name not in self._sessions
        }

    async def refresh_registry(self) -> list[RegistryEntry]:
        """Reload the registry snapshot to see sessions owned elsewhere.

        Visibility only: nothing is written back.
        """
        entries = await asyncio.to_thread(self._registry.load)
        for entry in entries.values():
            if entry.state in _LIVE_STATES and not is_process_alive(entry.pid):
                entry.state = SessionState.CRASHED
        self._external = {
            name: entry for name, entry in entries.items()
            if name not in self._sessions
        }
        return list(entries.values())

    # ── Start / stop ──

    async def start_session(self, config: SessionConfig) -> Session:
        """Create and start a session, then record it in the registry.

        Raises:
            SessionAlreadyExistsError: The name is already tracked.
            SpawnFailedError: The agent process could not be launched.
            RegistryLockError / RegistryCorruptError: The registry could
                not be written; the session is stopped again.
        """
        name = config.name
        if not name:
            raise ValueError("session name must be non-empty")
        # Check and reserve with no await in between.
        if name in self._sessions:
            raise SessionAlreadyExistsError(name)

        session = Session(
            config,
            engine_config=self._config,
            spawner=self._spawner,
            protocol=self._protocol,
            clock=self._clock,
        )
        self._sessions[name] = session
        self._exit_subs[name] = [
            session.events.subscribe(ProcessExited, self._on_process_exited),
            session.events.subscribe(PromptCompleted, self._on_prompt_completed),
        ]

        try:
            await session.start()
        except (Exception, asyncio.CancelledError):
            self._forget(name)
            raise

        if self._superseded(session):
            logger.info("Session %s was stopped while starting", name)
            return session

        try:
            await asyncio.to_thread(self._registry.put, self._entry_for(session))
        except (RegistryLockError, RegistryCorruptError):
            logger.error("Registry write failed for new session %s; stopping it", name)
            self._forget(name)
            await session.stop()
            raise

        if self._superseded(session):
            if name not in self._sessions:
                await asyncio.to_thread(self._registry.remove, name)
            logger.info("Session %s was stopped while starting", name)
            return session
        self._recorded.add(name)
        self._external.pop(name, None)
        info = session.get_info()
        logger.info(
            "Session %s started (pid=%d, cwd=%s)",
            name, info.pid, info.working_directory,
        )
        await self.events.publish(SessionStarted(session_name=name, info=info))
        return session

    async def stop_session(self, name: str) -> None:
        """Stop a session, cancel any pending restart and drop its entry.

        Raises:
            SessionNotFoundError: The name is not tracked.
        """
        session = self._sessions.get(name)
        if session is None:
            raise SessionNotFoundError(name)

        await self._cancel_restart(name)
        if name in self._recorded:
            await self._write_state(name, SessionState.STOPPING)
        await session.stop()

        if self._sessions.get(name) is not session:
            # A concurrent stop_session() already finished the job.
            return
        self._forget(name)
        await asyncio.to_thread(self._registry.remove, name)
        logger.info("Session %s stopped", name)
        await self.events.publish(SessionStopped(session_name=name))

    async def stop_all(self) -> None:
        """Stop every tracked session concurrently."""
        await self._stop_many(list(self._sessions))

    async def stop_by_tag(self, tag: str) -> int:
        """Stop every session tagged `tag`. Returns how many were stopped."""
        names = [
            name for name, session in self._sessions.items()
            if tag in session.config.tags
        ]
        return await self._stop_many(names)

    async def _stop_many(self, names: list[str]) -> int:
        if not names:
            return 0
        results = await asyncio.gather(
            *(self.stop_session(name) for name in names),
            return_exceptions=True,
        )
        stopped = 0
        first_error: BaseException | None = None
        for name, result in zip(names, results):
            if result is None or isinstance(result, SessionNotFoundError):
                stopped += 1
                continue
            logger.error("Failed to stop session %s: %s", name, result)
            if first_error is None:
                first_error = result
        if first_error is not None:
            raise first_error
        return stopped

    def _forget(self, name: str) -> None:
        self._sessions.pop(name, None)
        self._recorded.discard(name)
        for sub in self._exit_subs.pop(name, []):
            sub.unsubscribe()

    def _superseded(self, session: Session) -> bool:
        """A stop_session() call overtook this session's start."""
        return self._sessions.get(session.name) is not session or session.stop_requested

    # ── Lookup ──

    def get_session(self, name: str) -> Session:
        session = self._sessions.get(name)
        if session is None:
            raise SessionNotFoundError(name)
        return session

    def has_session(self, name: str) -> bool:
        return name in self._sessions

    def get_session_info(self, name: str) -> SessionInfo:
        """Info for a session tracked here, or one seen in the registry."""
        session = self._sessions.get(name)
        if session is not None:
            return session.get_info()
        entry = self._external.get(name)
        if entry is not None:
            return entry.to_info()
        raise SessionNotFoundError(name)

    def list_sessions(self) -> list[SessionInfo]:
        infos = [session.get_info() for session in self._sessions.values()]
        infos.extend(
            entry.to_info() for name, entry in sorted(self._external.items())
            if name not in self._sessions
        )
        return infos

    # ── Prompts ──

    async def send_prompt(self, name: str, text: str) -> str:
        return await self.get_session(name).send_prompt(text)

    async def broadcast_prompt(
        self, names: Iterable[str], text: str,
    ) -> list[BroadcastResult]:
        """Send `text` to several sessions concurrently.

        Per-session failures are reported in the results, never raised.
        """
        names = list(dict.fromkeys(names))

        async def _one(name: str) -> BroadcastResult:
            try:
                response = await self.send_prompt(name, text)
            except (AgentSpawnError, ValueError) as exc:
                return BroadcastResult(session_name=name, error=exc)
            return BroadcastResult(session_name=name, response=response)

        return list(await asyncio.gather(*(_one(name) for name in names)))

    # ── Crash handling ──

    async def _on_process_exited(self, event: ProcessExited) -> None:
        session = self._sessions.get(event.session_name)
        if session is None or event.expected:
            return
        if await self._stopped_elsewhere(session.name):
            await self._finish_external_stop(session)
            return
        await self._handle_crash(session, event)

    async def _stopped_elsewhere(self, name: str) -> bool:
        """True when another invocation has claimed the stop of `name`.

        `agentspawn stop` marks the entry stopping before it signals the
        pid and removes the entry once the process is gone.
        """
        if name not in self._recorded:
            return False
        try:
            entry = await asyncio.to_thread(self._registry.get, name)
        except RegistryCorruptError as exc:
            logger.warning("Cannot read registry entry for %s: %s", name, exc)
            return False
        return entry is None or entry.state in (
            SessionState.STOPPING, SessionState.STOPPED,
        )

    async def _finish_external_stop(self, session: Session) -> None:
        name = session.name
        logger.info("Session %s was stopped by another invocation", name)
        self._forget(name)
        await session.stop()
        try:
            await asyncio.to_thread(self._registry.remove, name)
        except (RegistryLockError, RegistryCorruptError) as exc:
            logger.warning("Registry update for %s failed: %s", name, exc)
        await self.events.publish(SessionStopped(session_name=name))

    def _on_prompt_completed(self, event: PromptCompleted) -> None:
        session = self._sessions.get(event.session_name)
        if session is None or event.session_name not in self._recorded:
            return
        # Off the output path so the caller gets its response first.
        self._spawn_background(
            self._write_prompt_count(event.session_name, session.get_info().prompt_count),
        )

    async def _write_prompt_count(self, name: str, count: int) -> None:
        def _set_count(entries: dict[str, RegistryEntry]) -> None:
            entry = entries.get(name)
            if entry is not None:
                # Background writes may land out of order.
                entry.prompt_count = max(entry.prompt_count, count)

        try:
            await asyncio.to_thread(self._registry.update, _set_count)
        except (RegistryLockError, RegistryCorruptError) as exc:
            logger.warning("Registry update for %s failed: %s", name, exc)

    async def _handle_crash(self, session: Session, event: ProcessExited) -> None:
        name = session.name
        classification = classify_exit(event.exit_code, event.signal)
        policy = session.config.restart_policy

        can_retry = (
            policy is not None
            and policy.enabled
            and session.retry_count < policy.max_retries
            and classification != ExitClassification.PERMANENT
        )
        if not can_retry:
            reason = self._crash_reason(session, classification)
            await self._mark_crashed(session, classification, reason)
            return

        logger.warning(
            "Session %s crashed (code=%s, signal=%s); restart %d of %d scheduled",
            name, event.exit_code, event.signal,
            session.retry_count + 1, policy.max_retries,
        )
        task = asyncio.create_task(
            self._restart(session, classification, event.exit_code),
            name=f"restart-{name}",
        )
        self._restart_tasks[name] = task
        task.add_done_callback(lambda t, n=name: self._clear_restart_task(n, t))

    def _clear_restart_task(self, name: str, task: asyncio.Task) -> None:
        if self._restart_tasks.get(name) is task:
            del self._restart_tasks[name]

    async def _restart(
        self,
        session: Session,
        classification: ExitClassification,
        exit_code: int | None,
    ) -> None:
        name = session.name
        policy = session.config.restart_policy
        max_retries = policy.max_retries if policy else 0

        # Written from this task so it always lands before the new run's entry.
        await self._write_state(name, SessionState.CRASHED, exit_code=exit_code)

        while True:
            delay = self._backoff(session.retry_count)
            if delay > 0:
                await asyncio.sleep(delay)
            if self._sessions.get(name) is not session:
                return
            if await self._stopped_elsewhere(name):
                await self._finish_external_stop(session)
                return
            session.retry_count += 1
            try:
                await session.start()
            except SpawnFailedError as exc:
                logger.warning(
                    "Restart %d of session %s failed: %s",
                    session.retry_count, name, exc.reason,
                )
                if session.retry_count < max_retries:
                    continue
                await self._mark_crashed(session, classification, str(exc))
                return
            break

        info = session.get_info()
        await self._write_entry(session)
        logger.info(
            "Session %s restarted (attempt %d, pid=%d)",
            name, info.retry_count, info.pid,
        )
        await self.events.publish(SessionRestarted(
            session_name=name, retry_count=info.retry_count, pid=info.pid,
        ))

        if policy is not None and policy.replay_prompt and session.last_prompt:
            self._spawn_background(self._replay_prompt(session, session.last_prompt))

    async def _replay_prompt(self, session: Session, text: str) -> None:
        try:
            await session.send_prompt(text)
        except AgentSpawnError as exc:
            logger.warning("Replaying last prompt in %s failed: %s", session.name, exc)

    async def _cancel_restart(self, name: str) -> None:
        task = self._restart_tasks.pop(name, None)
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("Pending restart of session %s cancelled", name)
        await self.events.publish(RestartCancelled(session_name=name))

    async def _mark_crashed(
        self,
        session: Session,
        classification: ExitClassification,
        reason: str,
    ) -> None:
        name = session.name
        logger.error(
            "Session %s crashed for good (code=%s, signal=%s, %s): %s",
            name, session.exit_code, session.exit_signal,
            classification.value, reason,
        )
        await self._write_state(name, SessionState.CRASHED, exit_code=session.exit_code)
        await self.events.publish(SessionCrashed(
            session_name=name,
            exit_code=session.exit_code,
            signal=session.exit_signal,
            classification=classification.value,
            reason=reason,
            retry_count=session.retry_count,
        ))

    @staticmethod
    def _crash_reason(session: Session, classification: ExitClassification) -> str:
        policy = session.config.restart_policy
        if policy is None or not policy.enabled:
            return "restart policy disabled"
        if classification == ExitClassification.PERMANENT:
            return "exit is not retryable"
        return f"retries exhausted ({session.retry_count}/{policy.max_retries})"

    # ── Registry helpers ──

    def _entry_for(self, session: Session) -> RegistryEntry:
        info = session.get_info()
        return RegistryEntry(
            name=info.name,
            working_directory=info.working_directory,
            pid=info.pid,
            state=info.state,
            started_at=info.started_at.isoformat() if info.started_at else None,
            exit_code=info.exit_code,
            permission_mode=info.permission_mode,
            restart_policy=session.config.restart_policy,
            tags=list(info.tags),
            prompt_count=info.prompt_count,
        )

    async def _write_entry(self, session: Session) -> None:
        try:
            await asyncio.to_thread(self._registry.put, self._entry_for(session))
        except (RegistryLockError, RegistryCorruptError) as exc:
            # No caller is waiting on crash handling; keep going.
            logger.warning("Registry update for %s failed: %s", session.name, exc)

    async def _write_state(
        self, name: str, state: SessionState, *, exit_code: int | None = None,
    ) -> None:
        try:
            await asyncio.to_thread(
                self._registry.set_state, name, state, exit_code=exit_code,
            )
        except (RegistryLockError, RegistryCorruptError) as exc:
            logger.warning("Registry update for %s failed: %s", name, exc)

    def _spawn_background(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
