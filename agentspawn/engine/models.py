"""Core data models for session orchestration.

All dataclasses and enums shared by the session, manager, registry
and router. Single source of truth to avoid circular imports.
"""
from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class SessionState(str, Enum):
    """Run-state of a session. See lifecycle.py for transition rules."""
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    CRASHED = "crashed"


TERMINAL_STATES = frozenset({SessionState.STOPPED, SessionState.CRASHED})


class PermissionMode(str, Enum):
    """Permission modes understood by the agent CLI."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RestartPolicy:
    """Bounds automatic restarts after an unexpected exit."""
    enabled: bool = False
    max_retries: int = 3
    replay_prompt: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "max_retries": self.max_retries,
            "replay_prompt": self.replay_prompt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RestartPolicy:
        return cls(
            enabled=bool(data.get("enabled", False)),
            max_retries=int(data.get("max_retries", 3)),
            replay_prompt=bool(data.get("replay_prompt", False)),
        )


@dataclass(frozen=True)
class SessionConfig:
    """Immutable creation parameters for one session.

    Consumed once by SessionManager.start_session(); a restart reuses
    the same config under the same name.
    """
    name: str
    working_directory: str
    permission_mode: PermissionMode | None = None
    system_prompt: str | None = None
    env: dict[str, str] | None = None
    restart_policy: RestartPolicy | None = None
    tags: tuple[str, ...] = ()
    # Overrides EngineConfig.prompt_timeout_seconds when set.
    prompt_timeout_seconds: float | None = None


@dataclass
class SessionInfo:
    """Point-in-time view of a session, in memory or from the registry."""
    name: str
    pid: int
    state: SessionState
    started_at: datetime | None
    working_directory: str
    exit_code: int | None = None
    permission_mode: PermissionMode | None = None
    tags: list[str] = field(default_factory=list)
    prompt_count: int = 0
    retry_count: int = 0


@dataclass
class SessionMetrics:
    """Derived counters; never persisted."""
    prompt_count: int = 0
    avg_response_time_ms: float = 0.0
    total_response_chars: int = 0
    estimated_tokens: int = 0
    uptime_ms: float = 0.0

    @classmethod
    def from_totals(
        cls,
        prompt_count: int,
        total_response_time_ms: float,
        total_response_chars: int,
        uptime_ms: float,
    ) -> SessionMetrics:
        avg = total_response_time_ms / prompt_count if prompt_count else 0.0
        return cls(
            prompt_count=prompt_count,
            avg_response_time_ms=avg,
            total_response_chars=total_response_chars,
            estimated_tokens=estimate_tokens(total_response_chars),
            uptime_ms=max(uptime_ms, 0.0),
        )


def estimate_tokens(chars: int) -> int:
    """Character-based token approximation (four chars per token)."""
    return math.ceil(chars / 4) if chars > 0 else 0


@dataclass
class PendingPrompt:
    """The single in-flight prompt of a session."""
    text: str
    submitted_at: float
    future: asyncio.Future[str]
    chunks: list[str] = field(default_factory=list)

    @property
    def response(self) -> str:
        return "".join(self.chunks)


@dataclass
class RegistryEntry:
    """Durable projection of a session's config and last-known state."""
    name: str
    working_directory: str
    pid: int = 0
    state: SessionState = SessionState.RUNNING
    started_at: str | None = None
    exit_code: int | None = None
    permission_mode: PermissionMode | None = None
    restart_policy: RestartPolicy | None = None
    tags: list[str] = field(default_factory=list)
    prompt_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "working_directory": self.working_directory,
            "pid": self.pid,
            "state": self.state.value,
            "started_at": self.started_at,
            "exit_code": self.exit_code,
            "permission_mode": (
                self.permission_mode.value if self.permission_mode else None
            ),
            "restart_policy": (
                self.restart_policy.to_dict() if self.restart_policy else None
            ),
            "tags": list(self.tags),
            "prompt_count": self.prompt_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RegistryEntry:
        """Build an entry from its document form.

        Raises KeyError/ValueError/TypeError on malformed input; the
        registry turns those into RegistryCorruptError.
        """
        policy = data.get("restart_policy")
        mode = data.get("permission_mode")
        tags = data.get("tags") or []
        if not isinstance(tags, list):
            raise TypeError("tags must be a list")
        started_at = data.get("started_at")
        if started_at is not None and not isinstance(started_at, str):
            raise TypeError("started_at must be an ISO-8601 string")
        return cls(
            name=str(data["name"]),
            working_directory=str(data["working_directory"]),
            pid=int(data.get("pid") or 0),
            state=SessionState(data["state"]),
            started_at=started_at,
            exit_code=data.get("exit_code"),
            permission_mode=PermissionMode(mode) if mode else None,
            restart_policy=(
                RestartPolicy.from_dict(policy) if isinstance(policy, dict) else None
            ),
            tags=[str(t) for t in tags],
            prompt_count=int(data.get("prompt_count") or 0),
        )

    def to_info(self) -> SessionInfo:
        started = None
        if self.started_at:
            try:
                started = datetime.fromisoformat(self.started_at)
            except ValueError:
                started = None
        return SessionInfo(
            name=self.name,
            pid=self.pid,
            state=self.state,
            started_at=started,
            working_directory=self.working_directory,
            exit_code=self.exit_code,
            permission_mode=self.permission_mode,
            tags=list(self.tags),
            prompt_count=self.prompt_count,
        )
