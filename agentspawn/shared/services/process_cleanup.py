"""Liveness checks and signalling for agent processes known only by pid.

Used for sessions discovered in the registry, which this invocation did
not spawn and so holds no process handle for.
"""

from __future__ import annotations

import logging
import os
import signal
import time

logger = logging.getLogger(__name__)


def is_process_alive(pid: int) -> bool:
    """True when a process with this pid exists (signal 0 probe)."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, but owned by someone else.
        return True
    return True


def terminate_pid(pid: int, timeout: float = 5.0, poll_interval: float = 0.1) -> bool:
    """SIGTERM a foreign process, escalating to SIGKILL after `timeout`.

    Returns True once the process is gone, False if it survived SIGKILL
    or could not be signalled.
    """
    if not is_process_alive(pid):
        return True
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True
    except PermissionError:
        logger.warning("Not permitted to signal pid=%d", pid)
        return False

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_process_alive(pid):
            return True
        time.sleep(poll_interval)

    logger.warning("pid=%d ignored SIGTERM for %.1fs; sending SIGKILL", pid, timeout)
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        return True
    time.sleep(poll_interval)
    return not is_process_alive(pid)
