"""Exception hierarchy for session orchestration.

Every failure the core surfaces to a caller is one of these. OS-level
errors outside this taxonomy propagate unchanged.
"""
from __future__ import annotations


class AgentSpawnError(Exception):
    """Base exception for all orchestration errors."""

    def __init__(self, message: str, code: str):
        self.code = code
        super().__init__(message)


class SessionNotFoundError(AgentSpawnError):
    """Operation on a session name that is not tracked."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Session not found: {name}", "SESSION_NOT_FOUND")


class SessionAlreadyExistsError(AgentSpawnError):
    """A session with this name is already tracked."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Session already exists: {name}", "SESSION_EXISTS")


class SpawnFailedError(AgentSpawnError):
    """The agent process could not be launched."""
    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(
            f"Failed to spawn session {name}: {reason}", "SPAWN_FAILED"
        )


class SessionNotRunningError(AgentSpawnError):
    """The session has no running process to talk to."""
    def __init__(self, name: str, state: str):
        self.name = name
        self.state = state
        super().__init__(
            f"Session {name} is not running (state={state})",
            "SESSION_NOT_RUNNING",
        )


class SessionBusyError(AgentSpawnError):
    """A prompt is already in flight on this session."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Session {name} is busy processing another prompt",
            "SESSION_BUSY",
        )


class PromptTimeoutError(AgentSpawnError):
    """No completed response was observed within the prompt window."""
    def __init__(
        self, session_name: str, timeout_seconds: float, prompt_text: str
    ):
        self.session_name = session_name
        self.timeout_seconds = timeout_seconds
        self.prompt_text = prompt_text
        super().__init__(
            f'Prompt timed out after {timeout_seconds}s '
            f'in session "{session_name}"',
            "PROMPT_TIMEOUT",
        )


class PromptError(AgentSpawnError):
    """A pending prompt failed because its process went away."""
    def __init__(self, session_name: str, reason: str):
        self.session_name = session_name
        self.reason = reason
        super().__init__(
            f"Prompt failed in session {session_name}: {reason}",
            "PROMPT_FAILED",
        )


class SessionNotAttachableError(AgentSpawnError):
    """The session exposes no live process streams to attach to."""
    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Session {name} has no live process handle to attach to",
            "SESSION_NOT_ATTACHABLE",
        )


class RegistryCorruptError(AgentSpawnError):
    """The registry document cannot be parsed or has the wrong shape."""
    def __init__(self, path: str, detail: str = ""):
        self.path = path
        self.detail = detail
        message = f"Registry file is corrupt: {path}"
        if detail:
            message += f" ({detail})"
        super().__init__(message, "REGISTRY_CORRUPT")


class RegistryLockError(AgentSpawnError):
    """The registry advisory lock was not acquired in time."""
    def __init__(self, path: str, timeout_seconds: float):
        self.path = path
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Failed to acquire lock on registry file: {path} "
            f"(waited {timeout_seconds}s)",
            "REGISTRY_LOCK_FAILED",
        )


class InvalidConfigError(AgentSpawnError):
    """Configuration input has the wrong shape."""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid configuration: {reason}", "INVALID_CONFIG")
