"""External hook scripts fired on session events."""

from __future__ import annotations

import json

import pytest

from agentspawn.engine.events import SessionCrashed
from agentspawn.shared.services.hooks import HookConfig, HookRunner

from conftest import make_config, wait_until


def _write_hooks(tmp_path, hooks) -> str:
    path = tmp_path / "hooks.json"
    path.write_text(json.dumps({"hooks": hooks}))
    return str(path)


def _recorder(tmp_path, event: str) -> HookConfig:
    out = tmp_path / "hook.log"
    return HookConfig(
        event=event,
        script=f'echo "$AGENTSPAWN_SESSION $AGENTSPAWN_EVENT" >> "{out}"',
    )


def _recorded(tmp_path) -> list[str]:
    out = tmp_path / "hook.log"
    if not out.exists():
        return []
    return out.read_text().splitlines()


def test_load_missing_file_has_no_hooks(tmp_path):
    assert HookRunner.load(tmp_path / "absent.json").hooks == []


@pytest.mark.parametrize("content", ["{broken", "[]", '{"hooks": "nope"}'])
def test_load_invalid_file_has_no_hooks(tmp_path, content):
    path = tmp_path / "hooks.json"
    path.write_text(content)
    assert HookRunner.load(path).hooks == []


def test_load_skips_invalid_entries(tmp_path):
    path = _write_hooks(tmp_path, [
        {"event": "on_crash", "script": "true"},
        {"event": "on_lunch", "script": "true"},
        {"event": "on_stop"},
        "garbage",
    ])
    assert HookRunner.load(path).hooks == [HookConfig("on_crash", "true")]


@pytest.mark.asyncio
async def test_fire_passes_session_context(tmp_path):
    out = tmp_path / "data.json"
    runner = HookRunner([
        HookConfig("on_response", f'printf "%s" "$AGENTSPAWN_DATA" > "{out}"'),
    ])

    await runner.fire("alpha", "on_response", {"text": "done"})

    assert json.loads(out.read_text()) == {"text": "done"}


@pytest.mark.asyncio
async def test_failing_script_does_not_raise(tmp_path):
    runner = HookRunner([HookConfig("on_stop", "exit 3")])
    await runner.fire("alpha", "on_stop", {})


@pytest.mark.asyncio
async def test_bound_runner_fires_on_manager_events(manager, tmp_path, spawner):
    runner = HookRunner([_recorder(tmp_path, "on_start"), _recorder(tmp_path, "on_crash")])
    runner.bind(manager)
    crashed: list[SessionCrashed] = []
    manager.events.subscribe(SessionCrashed, crashed.append)

    await manager.start_session(make_config("alpha", tmp_path))
    await runner.drain()
    spawner.latest().exit(1)
    await wait_until(lambda: len(crashed) == 1)
    await runner.drain()

    assert _recorded(tmp_path) == ["alpha on_start", "alpha on_crash"]
    runner.unbind()


@pytest.mark.asyncio
async def test_unbound_runner_is_silent(manager, tmp_path):
    runner = HookRunner([_recorder(tmp_path, "on_start")])
    runner.bind(manager)
    runner.unbind()

    await manager.start_session(make_config("alpha", tmp_path))
    await runner.drain()

    assert _recorded(tmp_path) == []
    await manager.stop_all()
