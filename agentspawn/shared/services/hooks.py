"""External hook runner: shell scripts fired on session events.

Config format (~/.agentspawn/hooks.json):
{
    "hooks": [
        {"event": "on_crash", "script": "notify-send 'agent crashed'"},
        {"event": "on_response", "script": "./log-response.sh"}
    ]
}

Each script runs through the shell with the normal environment plus
AGENTSPAWN_SESSION, AGENTSPAWN_EVENT and AGENTSPAWN_DATA (JSON).
Hooks are notifications only: a missing or broken config disables them,
and a failing script is logged, never raised.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from agentspawn.engine.errors import SessionNotFoundError
from agentspawn.engine.event_bus import Subscription
from agentspawn.engine.events import (
    PromptCompleted,
    PromptStarted,
    SessionCrashed,
    SessionEvent,
    SessionStarted,
    SessionStopped,
    event_to_dict,
)

if TYPE_CHECKING:
    from agentspawn.engine.manager import SessionManager
    from agentspawn.engine.session import Session

logger = logging.getLogger(__name__)

HOOK_EVENTS = frozenset({
    "on_start", "on_stop", "on_crash", "on_prompt", "on_response",
})

# Per-script wall clock limit; hooks must not pile up behind a hung script.
HOOK_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class HookConfig:
    event: str
    script: str


class HookRunner:
    """Runs configured scripts for manager and session events."""

    def __init__(self, hooks: list[HookConfig] | None = None) -> None:
        self._hooks = list(hooks or [])
        self._manager_subs: list[Subscription] = []
        self._session_subs: dict[str, list[Subscription]] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def hooks(self) -> list[HookConfig]:
        return list(self._hooks)

    @classmethod
    def load(cls, path: Path | str) -> HookRunner:
        """Read hooks.json. Any problem yields a runner with no hooks."""
        path = Path(path).expanduser()
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return cls()
        except OSError as exc:
            logger.warning("Failed to read hooks file %s: %s", path, exc)
            return cls()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("hooks file is not valid JSON, ignoring hooks: %s", path)
            return cls()
        if not isinstance(data, dict) or not isinstance(data.get("hooks"), list):
            logger.warning("hooks file has invalid structure, ignoring hooks: %s", path)
            return cls()

        hooks: list[HookConfig] = []
        for item in data["hooks"]:
            if not isinstance(item, dict):
                continue
            event, script = item.get("event"), item.get("script")
            if event not in HOOK_EVENTS or not isinstance(script, str) or not script:
                logger.warning("Skipping invalid hook entry in %s: %r", path, item)
                continue
            hooks.append(HookConfig(event=event, script=script))
        logger.info("Loaded %d hook(s) from %s", len(hooks), path)
        return cls(hooks)

    # ── Wiring ──

    def bind(self, manager: SessionManager) -> None:
        """Fire hooks for every session the manager starts from now on."""
        if not self._hooks:
            return
        bus = manager.events

        async def on_started(event: SessionStarted) -> None:
            try:
                session = manager.get_session(event.session_name)
            except SessionNotFoundError:
                return
            self.bind_session(session)
            await self._fire_event("on_start", event)

        async def on_stopped(event: SessionStopped) -> None:
            self.unbind_session(event.session_name)
            await self._fire_event("on_stop", event)

        async def on_crashed(event: SessionCrashed) -> None:
            await self._fire_event("on_crash", event)

        self._manager_subs = [
            bus.subscribe(SessionStarted, on_started),
            bus.subscribe(SessionStopped, on_stopped),
            bus.subscribe(SessionCrashed, on_crashed),
        ]

    def bind_session(self, session: Session) -> None:
        if session.name in self._session_subs:
            return

        async def on_prompt(event: PromptStarted) -> None:
            await self._fire_event("on_prompt", event)

        async def on_response(event: PromptCompleted) -> None:
            await self._fire_event("on_response", event)

        self._session_subs[session.name] = [
            session.events.subscribe(PromptStarted, on_prompt),
            session.events.subscribe(PromptCompleted, on_response),
        ]

    def unbind_session(self, name: str) -> None:
        for sub in self._session_subs.pop(name, []):
            sub.unsubscribe()

    def unbind(self) -> None:
        for sub in self._manager_subs:
            sub.unsubscribe()
        self._manager_subs = []
        for name in list(self._session_subs):
            self.unbind_session(name)

    async def _fire_event(self, hook_event: str, event: SessionEvent) -> None:
        # Scripts run in the background so a slow hook never stalls
        # the event bus that delivered the event.
        task = asyncio.create_task(
            self.fire(event.session_name, hook_event, event_to_dict(event)),
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for hook scripts that are still running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ── Execution ──

    async def fire(
        self, session_name: str, hook_event: str, data: dict[str, Any],
    ) -> None:
        """Run every script registered for `hook_event`; never raises."""
        matching = [h for h in self._hooks if h.event == hook_event]
        if not matching:
            return
        env = {
            **os.environ,
            "AGENTSPAWN_SESSION": session_name,
            "AGENTSPAWN_EVENT": hook_event,
            "AGENTSPAWN_DATA": json.dumps(data, default=str),
        }
        await asyncio.gather(*(self._run_script(h.script, env) for h in matching))

    async def _run_script(self, script: str, env: dict[str, str]) -> None:
        try:
            proc = await asyncio.create_subprocess_shell(
                script,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=env,
            )
        except OSError as exc:
            logger.warning("Hook script %r failed to start: %s", script, exc)
            return

        try:
            code = await asyncio.wait_for(proc.wait(), timeout=HOOK_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(
                "Hook script %r still running after %.0fs; killing it",
                script, HOOK_TIMEOUT_SECONDS,
            )
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            return
        if code != 0:
            logger.warning("Hook script %r exited with code %s", script, code)
