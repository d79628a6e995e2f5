"""Durable, lock-protected session registry.

A single JSON document shared by every invocation of the tool:

    {"version": 1, "sessions": {"<name>": {...RegistryEntry...}}}

Reads are lock-free point-in-time snapshots. Every mutation is
load -> modify -> save under an advisory lock on a sidecar file, and the
save is an atomic replace, so concurrent writers never lose updates and
readers never see a half-written document.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

from agentspawn.shared.services.durable_write import atomic_write_json
from agentspawn.shared.services.file_lock import LockTimeoutError, acquire_file_lock

from .errors import RegistryCorruptError, RegistryLockError
from .models import RegistryEntry, SessionState

logger = logging.getLogger(__name__)

REGISTRY_VERSION = 1

T = TypeVar("T")


class Registry:
    """Session existence and reconnection metadata, persisted at `path`."""

    def __init__(self, path: Path | str, lock_timeout_seconds: float = 5.0) -> None:
        self._path = Path(path).expanduser()
        self._lock_timeout = lock_timeout_seconds

    @property
    def path(self) -> Path:
        return self._path

    # ── Snapshot access ──

    def load(self) -> dict[str, RegistryEntry]:
        """Read the document. A missing file is an empty registry.

        Raises:
            RegistryCorruptError: Unparseable JSON or unexpected shape.
        """
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        return self._parse(raw)

    def save(self, entries: dict[str, RegistryEntry]) -> None:
        """Atomically replace the document. Callers mutating shared state
        should go through update() instead."""
        document = {
            "version": REGISTRY_VERSION,
            "sessions": {
                name: entry.to_dict() for name, entry in sorted(entries.items())
            },
        }
        atomic_write_json(self._path, document)

    def get(self, name: str) -> RegistryEntry | None:
        return self.load().get(name)

    def list_entries(self) -> list[RegistryEntry]:
        return list(self.load().values())

    # ── Locked mutation ──

    def update(self, mutate: Callable[[dict[str, RegistryEntry]], T]) -> T:
        """Run `mutate` on the current entries and save the result,
        holding the registry lock for the whole read-modify-write.

        `mutate` edits the mapping in place; its return value is passed
        through.

        Raises:
            RegistryLockError: The lock was not acquired in time.
            RegistryCorruptError: The existing document is malformed.
        """
        try:
            with acquire_file_lock(self._path, timeout=self._lock_timeout):
                entries = self.load()
                result = mutate(entries)
                self.save(entries)
                return result
        except LockTimeoutError:
            raise RegistryLockError(str(self._path), self._lock_timeout) from None

    def put(self, entry: RegistryEntry) -> None:
        def _put(entries: dict[str, RegistryEntry]) -> None:
            entries[entry.name] = entry

        self.update(_put)
        logger.debug("Registry: wrote entry %s (%s)", entry.name, entry.state.value)

    def remove(self, name: str) -> bool:
        """Delete an entry. Returns False when there was nothing to delete."""
        removed = self.update(lambda entries: entries.pop(name, None))
        if removed is not None:
            logger.debug("Registry: removed entry %s", name)
        return removed is not None

    def set_state(
        self,
        name: str,
        state: SessionState,
        *,
        pid: int | None = None,
        exit_code: int | None = None,
        started_at: str | None = None,
    ) -> RegistryEntry | None:
        """Update one entry's run-state in place. Unknown names are a no-op."""

        def _set(entries: dict[str, RegistryEntry]) -> RegistryEntry | None:
            entry = entries.get(name)
            if entry is None:
                return None
            entry.state = state
            entry.exit_code = exit_code
            if pid is not None:
                entry.pid = pid
            if started_at is not None:
                entry.started_at = started_at
            return entry

        return self.update(_set)

    # ── Parsing ──

    def _parse(self, raw: str) -> dict[str, RegistryEntry]:
        path = str(self._path)
        if not raw.strip():
            return {}
        try:
            document: Any = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RegistryCorruptError(path, f"invalid JSON: {exc.msg}") from exc

        if not isinstance(document, dict):
            raise RegistryCorruptError(path, "top level is not an object")
        sessions = document.get("sessions")
        if not isinstance(sessions, dict):
            raise RegistryCorruptError(path, "missing 'sessions' object")
        version = document.get("version", REGISTRY_VERSION)
        if version != REGISTRY_VERSION:
            raise RegistryCorruptError(path, f"unsupported version {version!r}")

        entries: dict[str, RegistryEntry] = {}
        for name, data in sessions.items():
            if not isinstance(data, dict):
                raise RegistryCorruptError(path, f"entry {name!r} is not an object")
            try:
                entry = RegistryEntry.from_dict({"name": name, **data})
            except (KeyError, ValueError, TypeError) as exc:
                raise RegistryCorruptError(
                    path, f"entry {name!r}: {exc}",
                ) from exc
            entries[name] = entry
        return entries
