"""YAML configuration loader.

Loads one explicitly named YAML file declaring engine settings and the
sessions to start. Nothing is searched for or merged: the caller names
the file.

Example YAML:
    engine:
      registry_path: ~/.agentspawn/sessions.json
      shutdown_timeout_seconds: 5
      prompt_timeout_seconds: 300
      agent_command: claude

    defaults:
      cwd: /path/to/project

    sessions:
      backend:
        cwd: services/api           # relative to defaults.cwd
        permission_mode: acceptEdits
        system_prompt: |
          You maintain the API service.
        tags: [api, python]
        restart_policy:
          enabled: true
          max_retries: 3
      docs:
        cwd: /path/to/docs
        env:
          DOCS_ONLY: "1"
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig, validate_config
from .errors import InvalidConfigError
from .models import PermissionMode, RestartPolicy, SessionConfig

logger = logging.getLogger(__name__)


@dataclass
class OrchestrationConfig:
    """Complete parsed YAML configuration."""
    engine: EngineConfig
    sessions: list[SessionConfig] = field(default_factory=list)


def _parse_permission_mode(value: Any) -> PermissionMode | None:
    """Parse a permission mode string to enum (None when absent)."""
    if value is None:
        return None
    mapping = {
        "default": PermissionMode.DEFAULT,
        "acceptEdits": PermissionMode.ACCEPT_EDITS,
        "accept_edits": PermissionMode.ACCEPT_EDITS,
        "bypassPermissions": PermissionMode.BYPASS,
        "bypass": PermissionMode.BYPASS,
        "plan": PermissionMode.PLAN,
    }
    try:
        return mapping[value]
    except (KeyError, TypeError):
        raise InvalidConfigError(f"unknown permission_mode {value!r}") from None


def _parse_restart_policy(name: str, value: Any) -> RestartPolicy | None:
    if value is None:
        return None
    if value is True:
        return RestartPolicy(enabled=True)
    if value is False:
        return RestartPolicy(enabled=False)
    if not isinstance(value, dict):
        raise InvalidConfigError(f"session {name}: restart_policy must be a mapping")
    policy = RestartPolicy.from_dict({"enabled": True, **value})
    if policy.max_retries < 0:
        raise InvalidConfigError(f"session {name}: max_retries must be >= 0")
    return policy


def _parse_session(name: str, raw: Any, base_cwd: Path) -> SessionConfig:
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise InvalidConfigError(f"session {name} must be a mapping")

    cwd_raw = raw.get("cwd", raw.get("working_directory"))
    cwd = Path(str(cwd_raw)).expanduser() if cwd_raw else base_cwd
    if not cwd.is_absolute():
        cwd = base_cwd / cwd

    env = raw.get("env")
    if env is not None:
        if not isinstance(env, dict):
            raise InvalidConfigError(f"session {name}: env must be a mapping")
        env = {str(k): str(v) for k, v in env.items()}

    tags = raw.get("tags") or []
    if isinstance(tags, str):
        tags = [tags]
    if not isinstance(tags, list):
        raise InvalidConfigError(f"session {name}: tags must be a list")

    timeout = raw.get("prompt_timeout_seconds")
    if timeout is not None and (
        isinstance(timeout, bool) or not isinstance(timeout, (int, float))
    ):
        raise InvalidConfigError(f"session {name}: prompt_timeout_seconds must be a number")

    return SessionConfig(
        name=name,
        working_directory=str(cwd),
        permission_mode=_parse_permission_mode(raw.get("permission_mode")),
        system_prompt=raw.get("system_prompt"),
        env=env,
        restart_policy=_parse_restart_policy(name, raw.get("restart_policy")),
        tags=tuple(str(t) for t in tags),
        prompt_timeout_seconds=float(timeout) if timeout is not None else None,
    )


def load_yaml_config(
    path: str | Path, base: EngineConfig | None = None,
) -> OrchestrationConfig:
    """Load and parse a YAML config file.

    Engine settings are layered over `base` (typically
    EngineConfig.from_env()). Relative session cwds resolve against
    ``defaults.cwd``, else the directory containing the file.

    Raises:
        FileNotFoundError: `path` does not exist.
        yaml.YAMLError: The file is not valid YAML.
        InvalidConfigError: A section has the wrong shape.
    """
    path = Path(path).expanduser()
    logger.info("load_yaml_config: loading %s", path)
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise InvalidConfigError(f"{path}: top level must be a mapping")

    engine_raw = raw.get("engine") or {}
    engine = validate_config(engine_raw, base=base)

    defaults = raw.get("defaults") or {}
    if not isinstance(defaults, dict):
        raise InvalidConfigError("defaults must be a mapping")
    base_cwd = Path(str(defaults.get("cwd") or path.parent)).expanduser()
    if not base_cwd.is_absolute():
        base_cwd = (path.parent / base_cwd).resolve()

    sessions_raw = raw.get("sessions") or {}
    if not isinstance(sessions_raw, dict):
        raise InvalidConfigError("sessions must be a mapping of name to settings")
    sessions = [
        _parse_session(str(name), raw_session, base_cwd)
        for name, raw_session in sessions_raw.items()
    ]

    logger.info(
        "Parsed YAML config %s: %d session(s) declared", path.name, len(sessions),
    )
    return OrchestrationConfig(engine=engine, sessions=sessions)
