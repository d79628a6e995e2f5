"""Advisory cross-process file locking.

The lock is taken with fcntl.flock on a sidecar ``<file>.lock`` so the
data file itself can be atomically replaced while the lock is held.
Acquisition polls with LOCK_NB until a deadline, then gives up.
"""
from __future__ import annotations

import fcntl
import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 0.05

_THREAD_MUTEXES: dict[str, threading.Lock] = {}
_THREAD_MUTEXES_GUARD = threading.Lock()


class LockTimeoutError(TimeoutError):
    """The lock could not be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float) -> None:
        super().__init__(f"Could not acquire lock on {path} within {timeout}s")
        self.path = path
        self.timeout = timeout


def lock_path_for(target: Path) -> Path:
    return target.with_suffix(target.suffix + ".lock")


def _thread_mutex(path: Path) -> threading.Lock:
    # flock is per open file description, so threads in this process
    # need their own exclusion on top of it.
    key = str(path.resolve())
    with _THREAD_MUTEXES_GUARD:
        return _THREAD_MUTEXES.setdefault(key, threading.Lock())


@contextmanager
def acquire_file_lock(
    target: Path | str,
    timeout: float,
    *,
    poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> Iterator[Path]:
    """Hold an exclusive advisory lock on ``target`` for the block.

    The lock is released on every exit path, including exceptions raised
    inside the block.

    Raises:
        LockTimeoutError: Another holder kept the lock past ``timeout``.
        ValueError: ``timeout`` or ``poll_interval`` is not positive.
    """
    if timeout <= 0:
        raise ValueError(f"timeout must be positive (got {timeout})")
    if poll_interval <= 0:
        raise ValueError(f"poll_interval must be positive (got {poll_interval})")

    target = Path(target)
    lock_target = lock_path_for(target)
    lock_target.parent.mkdir(parents=True, exist_ok=True)
    deadline = time.monotonic() + timeout

    mutex = _thread_mutex(lock_target)
    if not mutex.acquire(timeout=timeout):
        raise LockTimeoutError(target, timeout)

    try:
        with open(lock_target, "a+") as fh:
            while True:
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        logger.warning("Timed out waiting for lock on %s", target)
                        raise LockTimeoutError(target, timeout) from None
                    time.sleep(poll_interval)
            try:
                yield target
            finally:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    finally:
        mutex.release()
