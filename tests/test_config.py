"""EngineConfig, environment overrides and YAML session declarations."""

from __future__ import annotations

import textwrap

import pytest
import yaml

from agentspawn.engine.config import EngineConfig, validate_config
from agentspawn.engine.errors import InvalidConfigError
from agentspawn.engine.models import PermissionMode, RestartPolicy
from agentspawn.engine.yaml_config import load_yaml_config


def test_defaults():
    config = EngineConfig()
    assert config.shutdown_timeout_seconds == 5.0
    assert config.prompt_timeout_seconds == 300.0
    assert config.agent_command == ["claude"]
    assert config.resolved_registry_path.name == "sessions.json"


def test_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("AGENTSPAWN_REGISTRY_PATH", str(tmp_path / "r.json"))
    monkeypatch.setenv("AGENTSPAWN_SHUTDOWN_TIMEOUT", "1.5")
    monkeypatch.setenv("AGENTSPAWN_AGENT_COMMAND", "my-agent --flag 'two words'")
    monkeypatch.setenv("AGENTSPAWN_PROTOCOL", "plain")

    config = EngineConfig.from_env()

    assert config.registry_path == str(tmp_path / "r.json")
    assert config.shutdown_timeout_seconds == 1.5
    assert config.agent_command == ["my-agent", "--flag", "two words"]
    assert config.protocol == "plain"


def test_validate_config_keeps_defaults_for_bad_types():
    config = validate_config({
        "prompt_timeout_seconds": 12,
        "idle_timeout_seconds": "soon",
        "lock_timeout_seconds": True,
        "agent_command": ["a", "b"],
    })
    assert config.prompt_timeout_seconds == 12.0
    assert config.idle_timeout_seconds == EngineConfig().idle_timeout_seconds
    assert config.lock_timeout_seconds == EngineConfig().lock_timeout_seconds
    assert config.agent_command == ["a", "b"]


@pytest.mark.parametrize("data", [None, [], "engine"])
def test_validate_config_rejects_non_mappings(data):
    with pytest.raises(InvalidConfigError) as exc_info:
        validate_config(data)
    assert exc_info.value.code == "INVALID_CONFIG"


def test_validate_config_rejects_unknown_protocol():
    with pytest.raises(InvalidConfigError):
        validate_config({"protocol": "carrier-pigeon"})


def _write(tmp_path, text: str):
    path = tmp_path / "agentspawn.yaml"
    path.write_text(textwrap.dedent(text))
    return path


def test_load_yaml_config(tmp_path):
    (tmp_path / "api").mkdir()
    path = _write(tmp_path, """
        engine:
          shutdown_timeout_seconds: 2
          agent_command: claude --model sonnet
        sessions:
          backend:
            cwd: api
            permission_mode: acceptEdits
            system_prompt: You maintain the API.
            tags: [api, python]
            restart_policy:
              max_retries: 4
            env:
              PORT: 8080
          docs:
            cwd: /srv/docs
            prompt_timeout_seconds: 30
    """)

    config = load_yaml_config(path)

    assert config.engine.shutdown_timeout_seconds == 2.0
    assert config.engine.agent_command == ["claude", "--model", "sonnet"]
    backend, docs = config.sessions
    assert backend.name == "backend"
    assert backend.working_directory == str(tmp_path / "api")
    assert backend.permission_mode == PermissionMode.ACCEPT_EDITS
    assert backend.tags == ("api", "python")
    assert backend.restart_policy == RestartPolicy(enabled=True, max_retries=4)
    assert backend.env == {"PORT": "8080"}
    assert docs.working_directory == "/srv/docs"
    assert docs.prompt_timeout_seconds == 30.0
    assert docs.restart_policy is None


def test_load_yaml_config_uses_defaults_cwd(tmp_path):
    path = _write(tmp_path, """
        defaults:
          cwd: /projects/app
        sessions:
          one: {}
          two:
            cwd: sub
    """)

    one, two = load_yaml_config(path).sessions

    assert one.working_directory == "/projects/app"
    assert two.working_directory == "/projects/app/sub"


def test_load_yaml_config_layers_over_base(tmp_path):
    path = _write(tmp_path, "engine:\n  idle_timeout_seconds: 0.5\n")
    base = EngineConfig(registry_path="/custom/registry.json")

    engine = load_yaml_config(path, base=base).engine

    assert engine.registry_path == "/custom/registry.json"
    assert engine.idle_timeout_seconds == 0.5


@pytest.mark.parametrize("text", [
    "sessions: [a, b]\n",
    "sessions:\n  a:\n    permission_mode: yolo\n",
    "sessions:\n  a:\n    tags: 5\n",
    "sessions:\n  a:\n    restart_policy: always\n",
    "- just\n- a list\n",
])
def test_load_yaml_config_rejects_bad_shapes(tmp_path, text):
    path = _write(tmp_path, text)
    with pytest.raises(InvalidConfigError):
        load_yaml_config(path)


def test_load_yaml_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "nope.yaml")


def test_load_yaml_config_invalid_yaml(tmp_path):
    path = _write(tmp_path, "sessions: [unclosed\n")
    with pytest.raises(yaml.YAMLError):
        load_yaml_config(path)
