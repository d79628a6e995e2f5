"""Registry: durable round-trip, corruption detection and the advisory lock."""

from __future__ import annotations

import fcntl
import json

import pytest

from agentspawn.engine.errors import RegistryCorruptError, RegistryLockError
from agentspawn.engine.models import (
    PermissionMode,
    RegistryEntry,
    RestartPolicy,
    SessionState,
)
from agentspawn.engine.registry import Registry
from agentspawn.shared.services.file_lock import lock_path_for


@pytest.fixture
def registry(tmp_path) -> Registry:
    return Registry(tmp_path / "sessions.json", lock_timeout_seconds=0.2)


def test_missing_file_is_empty(registry):
    assert registry.load() == {}
    assert registry.get("a") is None


def test_round_trip_keeps_working_directory(registry):
    registry.put(RegistryEntry(name="a", working_directory="/tmp/a"))

    entry = Registry(registry.path).get("a")

    assert entry is not None
    assert entry.working_directory == "/tmp/a"


def test_round_trip_keeps_every_field(registry):
    original = RegistryEntry(
        name="api",
        working_directory="/srv/api",
        pid=4321,
        state=SessionState.RUNNING,
        started_at="2026-01-02T03:04:05+00:00",
        permission_mode=PermissionMode.PLAN,
        restart_policy=RestartPolicy(enabled=True, max_retries=4),
        tags=["web", "py"],
        prompt_count=7,
    )
    registry.put(original)

    assert registry.load() == {"api": original}


def test_document_layout(registry):
    registry.put(RegistryEntry(name="a", working_directory="/tmp/a", pid=12))

    document = json.loads(registry.path.read_text())

    assert document["version"] == 1
    assert document["sessions"]["a"]["working_directory"] == "/tmp/a"
    assert document["sessions"]["a"]["state"] == "running"
    assert document["sessions"]["a"]["pid"] == 12


def test_remove(registry):
    registry.put(RegistryEntry(name="a", working_directory="/tmp/a"))
    registry.put(RegistryEntry(name="b", working_directory="/tmp/b"))

    assert registry.remove("a") is True
    assert registry.remove("a") is False
    assert list(registry.load()) == ["b"]


def test_set_state(registry):
    registry.put(RegistryEntry(name="a", working_directory="/tmp/a", pid=10))

    updated = registry.set_state("a", SessionState.CRASHED, exit_code=2)

    assert updated.state == SessionState.CRASHED
    entry = registry.get("a")
    assert entry.state == SessionState.CRASHED
    assert entry.exit_code == 2
    assert entry.pid == 10
    assert registry.set_state("ghost", SessionState.CRASHED) is None


@pytest.mark.parametrize("content", [
    "{not json",
    "[]",
    '{"version": 1}',
    '{"version": 1, "sessions": []}',
    '{"version": 99, "sessions": {}}',
    '{"version": 1, "sessions": {"a": "oops"}}',
    '{"version": 1, "sessions": {"a": {"state": "running"}}}',
    '{"version": 1, "sessions": {"a": {"working_directory": "/x", "state": "zombie"}}}',
    '{"version": 1, "sessions": {"a": {"working_directory": "/x", "state": "running", "started_at": 123}}}',
])
def test_malformed_document_is_corrupt(registry, content):
    registry.path.write_text(content)

    with pytest.raises(RegistryCorruptError) as exc_info:
        registry.load()

    assert exc_info.value.code == "REGISTRY_CORRUPT"
    assert str(registry.path) in str(exc_info.value)


def test_corrupt_document_is_not_overwritten(registry):
    registry.path.write_text("{not json")

    with pytest.raises(RegistryCorruptError):
        registry.put(RegistryEntry(name="a", working_directory="/tmp/a"))

    assert registry.path.read_text() == "{not json"


def test_lock_held_elsewhere_fails_with_path(registry):
    lock_file = lock_path_for(registry.path)
    lock_file.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_file, "a+") as held:
        fcntl.flock(held.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        try:
            with pytest.raises(RegistryLockError) as exc_info:
                registry.put(RegistryEntry(name="a", working_directory="/tmp/a"))
        finally:
            fcntl.flock(held.fileno(), fcntl.LOCK_UN)

    assert exc_info.value.code == "REGISTRY_LOCK_FAILED"
    assert exc_info.value.path == str(registry.path)
    assert registry.get("a") is None


def test_lock_is_released_after_failed_update(registry):
    def explode(entries):
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        registry.update(explode)

    registry.put(RegistryEntry(name="a", working_directory="/tmp/a"))
    assert registry.get("a") is not None


def test_update_returns_mutator_result(registry):
    registry.put(RegistryEntry(name="a", working_directory="/tmp/a"))

    names = registry.update(lambda entries: sorted(entries))

    assert names == ["a"]


def test_list_entries(registry):
    registry.put(RegistryEntry(name="b", working_directory="/tmp/b"))
    registry.put(RegistryEntry(name="a", working_directory="/tmp/a"))

    assert [e.name for e in registry.list_entries()] == ["a", "b"]
