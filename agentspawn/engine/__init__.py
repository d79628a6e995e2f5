"""agentspawn engine: supervised interactive agent sessions."""
from .models import (
    PermissionMode,
    RegistryEntry,
    RestartPolicy,
    SessionConfig,
    SessionInfo,
    SessionMetrics,
    SessionState,
)
from .config import EngineConfig
from .errors import (
    AgentSpawnError,
    InvalidConfigError,
    PromptError,
    PromptTimeoutError,
    RegistryCorruptError,
    RegistryLockError,
    SessionAlreadyExistsError,
    SessionBusyError,
    SessionNotAttachableError,
    SessionNotFoundError,
    SessionNotRunningError,
    SpawnFailedError,
)

__all__ = [
    # Core components (lazy import)
    "Session",
    "SessionManager",
    "BroadcastResult",
    "Registry",
    "Router",
    # Models
    "PermissionMode",
    "RegistryEntry",
    "RestartPolicy",
    "SessionConfig",
    "SessionInfo",
    "SessionMetrics",
    "SessionState",
    # Config
    "EngineConfig",
    # YAML config (lazy import)
    "OrchestrationConfig",
    "load_yaml_config",
    # Errors
    "AgentSpawnError",
    "InvalidConfigError",
    "PromptError",
    "PromptTimeoutError",
    "RegistryCorruptError",
    "RegistryLockError",
    "SessionAlreadyExistsError",
    "SessionBusyError",
    "SessionNotAttachableError",
    "SessionNotFoundError",
    "SessionNotRunningError",
    "SpawnFailedError",
]


def __getattr__(name: str):
    if name == "Session":
        from .session import Session
        return Session
    if name in ("SessionManager", "BroadcastResult"):
        from . import manager
        return getattr(manager, name)
    if name == "Registry":
        from .registry import Registry
        return Registry
    if name == "Router":
        from .router import Router
        return Router
    if name == "OrchestrationConfig":
        from .yaml_config import OrchestrationConfig
        return OrchestrationConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
