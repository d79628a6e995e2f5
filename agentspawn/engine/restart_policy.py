"""Crash classification and restart backoff.

Exit classification decides whether a crashed session is worth
restarting at all; backoff spaces the attempts out.
"""
from __future__ import annotations

import random
import signal
from enum import Enum


class ExitClassification(str, Enum):
    SUCCESS = "success"
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


# Misuse of the CLI, missing or non-executable command: retrying won't help.
PERMANENT_EXIT_CODES = frozenset({2, 126, 127, 128})
PERMANENT_SIGNALS = frozenset({"SIGSEGV", "SIGABRT"})

DEFAULT_BASE_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0
DEFAULT_JITTER = 0.5


def classify_exit(
    exit_code: int | None, signal_name: str | None = None,
) -> ExitClassification:
    """Classify how a process ended.

    Codes 129-192 are shells reporting death-by-signal (128 + N) and are
    classified like the signal itself would be.
    """
    if signal_name is not None:
        if signal_name in PERMANENT_SIGNALS:
            return ExitClassification.PERMANENT
        return ExitClassification.RETRYABLE

    if exit_code is None:
        return ExitClassification.RETRYABLE
    if exit_code == 0:
        return ExitClassification.SUCCESS
    if exit_code in PERMANENT_EXIT_CODES:
        return ExitClassification.PERMANENT
    if 128 < exit_code <= 192:
        try:
            name = signal.Signals(exit_code - 128).name
        except ValueError:
            return ExitClassification.RETRYABLE
        if name in PERMANENT_SIGNALS:
            return ExitClassification.PERMANENT
        return ExitClassification.RETRYABLE
    return ExitClassification.RETRYABLE


def calculate_backoff(
    attempt: int,
    base: float = DEFAULT_BASE_DELAY_SECONDS,
    maximum: float = DEFAULT_MAX_DELAY_SECONDS,
    jitter: float = DEFAULT_JITTER,
) -> float:
    """Exponential delay in seconds before restart attempt `attempt` (0-based).

    A random fraction of up to `jitter` of the delay is added on top,
    and the result is capped at `maximum`.
    """
    delay = min(base * (2 ** max(attempt, 0)), maximum)
    if jitter > 0:
        delay += delay * jitter * random.random()
    return min(delay, maximum)
