"""Typed events published by sessions and the session manager.

Session events go on `Session.events`, manager events on
`SessionManager.events`. Subscribers register per event class.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .models import SessionInfo


@dataclass
class SessionEvent:
    """Base event. Every event names the session it concerns."""
    event_type: str = ""
    session_name: str = ""


# ── Session events ──


@dataclass
class PromptStarted(SessionEvent):
    event_type: str = "prompt_start"
    text: str = ""


@dataclass
class PromptData(SessionEvent):
    event_type: str = "data"
    chunk: str = ""


@dataclass
class PromptCompleted(SessionEvent):
    event_type: str = "prompt_complete"
    text: str = ""
    response_time_ms: float = 0.0


@dataclass
class PromptFailed(SessionEvent):
    event_type: str = "prompt_error"
    error: Exception | None = None


@dataclass
class PromptTimedOut(SessionEvent):
    event_type: str = "prompt_timeout"
    timeout_seconds: float = 0.0
    prompt_text: str = ""
    partial_response: str = ""


@dataclass
class OutputReceived(SessionEvent):
    """Raw bytes read from the agent process (stdout or stderr)."""
    event_type: str = "output"
    stream: str = "stdout"
    data: bytes = b""


@dataclass
class StateChanged(SessionEvent):
    event_type: str = "state_changed"
    old_state: str = ""
    new_state: str = ""


@dataclass
class ProcessExited(SessionEvent):
    """The agent process of the current run went away.

    `expected` is True when the exit follows a stop() request.
    """
    event_type: str = "process_exited"
    pid: int = 0
    exit_code: int | None = None
    signal: str | None = None
    expected: bool = False


# ── Manager events ──


@dataclass
class SessionStarted(SessionEvent):
    event_type: str = "session_started"
    info: SessionInfo | None = None


@dataclass
class SessionStopped(SessionEvent):
    event_type: str = "session_stopped"


@dataclass
class SessionCrashed(SessionEvent):
    event_type: str = "session_crashed"
    exit_code: int | None = None
    signal: str | None = None
    classification: str = ""
    reason: str = ""
    retry_count: int = 0


@dataclass
class SessionRestarted(SessionEvent):
    event_type: str = "session_restarted"
    retry_count: int = 0
    pid: int = 0


@dataclass
class RestartCancelled(SessionEvent):
    event_type: str = "restart_cancelled"


def event_to_dict(event: SessionEvent) -> dict[str, Any]:
    """Flatten an event into JSON-friendly data (used by hooks and the CLI)."""
    data: dict[str, Any] = {}
    for name in event.__dataclass_fields__:
        value = getattr(event, name)
        if isinstance(value, bytes):
            value = value.decode("utf-8", errors="replace")
        elif isinstance(value, Exception):
            value = str(value)
        elif isinstance(value, SessionInfo):
            value = {
                "name": value.name,
                "pid": value.pid,
                "state": value.state.value,
                "working_directory": value.working_directory,
                "tags": list(value.tags),
            }
        data[name] = value
    return data
