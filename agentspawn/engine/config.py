"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENTSPAWN_* env vars,
or pass a raw mapping through validate_config().
"""
from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import InvalidConfigError

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".agentspawn"
DEFAULT_REGISTRY_PATH = str(DEFAULT_HOME / "sessions.json")
DEFAULT_HOOKS_PATH = str(DEFAULT_HOME / "hooks.json")


def _default_command() -> list[str]:
    return ["claude"]


@dataclass
class EngineConfig:
    """Orchestration engine configuration."""

    registry_path: str = DEFAULT_REGISTRY_PATH
    hooks_path: str = DEFAULT_HOOKS_PATH
    log_level: str = "INFO"

    # Grace period between SIGTERM and SIGKILL on stop().
    shutdown_timeout_seconds: float = 5.0
    # Max wait for a completed response. 0 (or negative) disables.
    prompt_timeout_seconds: float = 300.0
    # Quiet period after output that counts as response completion
    # when the protocol has no explicit completion signal.
    idle_timeout_seconds: float = 2.0
    # Max wait for the registry advisory lock.
    lock_timeout_seconds: float = 5.0

    # Agent executable and fixed leading arguments.
    agent_command: list[str] = field(default_factory=_default_command)
    # "stream-json" or "plain"; see protocol.py.
    protocol: str = "stream-json"

    @property
    def resolved_registry_path(self) -> Path:
        return Path(self.registry_path).expanduser()

    @property
    def resolved_hooks_path(self) -> Path:
        return Path(self.hooks_path).expanduser()

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from AGENTSPAWN_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("AGENTSPAWN_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: AGENTSPAWN_* overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no overrides, using defaults")

        command = os.getenv("AGENTSPAWN_AGENT_COMMAND")
        config = cls(
            registry_path=os.getenv(
                "AGENTSPAWN_REGISTRY_PATH", cls.registry_path
            ),
            hooks_path=os.getenv("AGENTSPAWN_HOOKS_PATH", cls.hooks_path),
            log_level=os.getenv("AGENTSPAWN_LOG_LEVEL", cls.log_level),
            shutdown_timeout_seconds=float(os.getenv(
                "AGENTSPAWN_SHUTDOWN_TIMEOUT", str(cls.shutdown_timeout_seconds)
            )),
            prompt_timeout_seconds=float(os.getenv(
                "AGENTSPAWN_PROMPT_TIMEOUT", str(cls.prompt_timeout_seconds)
            )),
            idle_timeout_seconds=float(os.getenv(
                "AGENTSPAWN_IDLE_TIMEOUT", str(cls.idle_timeout_seconds)
            )),
            lock_timeout_seconds=float(os.getenv(
                "AGENTSPAWN_LOCK_TIMEOUT", str(cls.lock_timeout_seconds)
            )),
            agent_command=(
                shlex.split(command) if command else _default_command()
            ),
            protocol=os.getenv("AGENTSPAWN_PROTOCOL", cls.protocol),
        )
        logger.info(
            "EngineConfig.from_env: registry=%s command=%s log_level=%s",
            config.registry_path, " ".join(config.agent_command),
            config.log_level,
        )
        return config


_FLOAT_FIELDS = (
    "shutdown_timeout_seconds",
    "prompt_timeout_seconds",
    "idle_timeout_seconds",
    "lock_timeout_seconds",
)
_STR_FIELDS = ("registry_path", "hooks_path", "log_level", "protocol")


def validate_config(data: Any, base: EngineConfig | None = None) -> EngineConfig:
    """Build an EngineConfig from a raw mapping, keeping defaults for
    missing or wrongly-typed keys.

    Raises InvalidConfigError when `data` is not a mapping.
    """
    if not isinstance(data, dict):
        raise InvalidConfigError("config must be a mapping")
    config = base or EngineConfig()
    values: dict[str, Any] = {}
    for key in _STR_FIELDS:
        if isinstance(data.get(key), str):
            values[key] = data[key]
    for key in _FLOAT_FIELDS:
        raw = data.get(key)
        if isinstance(raw, (int, float)) and not isinstance(raw, bool):
            values[key] = float(raw)
    command = data.get("agent_command")
    if isinstance(command, str):
        values["agent_command"] = shlex.split(command)
    elif isinstance(command, list) and all(isinstance(c, str) for c in command):
        values["agent_command"] = list(command)
    if values.get("protocol", config.protocol) not in ("stream-json", "plain"):
        raise InvalidConfigError(f"unknown protocol {values['protocol']!r}")
    return EngineConfig(**{**config.__dict__, **values})
