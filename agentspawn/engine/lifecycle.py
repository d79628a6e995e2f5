"""Session lifecycle state machine.

Defines valid transitions and enforces them. Invalid transitions
raise ValueError rather than silently proceeding.

State Diagram:

    STOPPED ──> STARTING ──> RUNNING ──┬──> STOPPING ──> STOPPED
                   │                   │
                   └──> CRASHED <──────┘

    CRASHED ──> STARTING  (new run under the same name)
    CRASHED ──> STOPPED   (explicit stop of a dead run)

A fresh Session reports STOPPED until its first start().
"""
from __future__ import annotations

from .models import SessionState

VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.STOPPED: {
        SessionState.STARTING,
    },
    SessionState.STARTING: {
        SessionState.RUNNING,
        SessionState.CRASHED,  # spawn failed
    },
    SessionState.RUNNING: {
        SessionState.STOPPING,
        SessionState.CRASHED,
    },
    SessionState.STOPPING: {
        SessionState.STOPPED,
    },
    SessionState.CRASHED: {
        SessionState.STARTING,  # restart
        SessionState.STOPPED,
    },
}


def validate_transition(current: SessionState, target: SessionState) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    allowed = VALID_TRANSITIONS.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
        raise ValueError(
            f"Invalid state transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())
