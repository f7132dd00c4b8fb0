"""Exponential backoff with jitter and cancellable waiting.

This module provides:
- calc_backoff: exponential backoff with ±25% jitter
- retry_backoff: backoff for a retryable HTTP response, honoring Retry-After on 429
- cancellable_sleep: a sleep that aborts as soon as the caller cancels
"""

from __future__ import annotations

import random
import threading
import time
from collections.abc import Callable, Mapping

from graph_drive.graph.errors import RequestCanceledError

# Retry configuration: 1s base, doubling, 60s cap, ±25% jitter, 5 extra attempts.
MAX_RETRIES = 5
BASE_BACKOFF = 1.0  # seconds
MAX_BACKOFF = 60.0  # seconds
BACKOFF_FACTOR = 2.0
JITTER_FRACTION = 0.25

STATUS_TOO_MANY_REQUESTS = 429

SleepFunc = Callable[[float, threading.Event | None], None]


def calc_backoff(attempt: int) -> float:
    """Compute the wait before retry number ``attempt + 1``.

    Args:
        attempt: Zero-based count of attempts already retried.

    Returns:
        ``min(BASE_BACKOFF * BACKOFF_FACTOR**attempt, MAX_BACKOFF)`` scaled by a
        uniform factor in [0.75, 1.25].
    """
    backoff = min(BASE_BACKOFF * BACKOFF_FACTOR**attempt, MAX_BACKOFF)
    jitter = backoff * JITTER_FRACTION * (random.random() * 2 - 1)  # noqa: S311
    return backoff + jitter


def retry_backoff(status_code: int, headers: Mapping[str, str], attempt: int) -> float:
    """Return the backoff for a retryable HTTP response.

    For 429 the server's ``Retry-After`` (integer seconds > 0) takes
    precedence over the computed value and is not capped. ``Retry-After`` on
    any other status is ignored.
    """
    if status_code == STATUS_TOO_MANY_REQUESTS:
        raw = headers.get("Retry-After", "")
        try:
            seconds = int(raw)
        except ValueError:
            seconds = 0
        if seconds > 0:
            return float(seconds)
    return calc_backoff(attempt)


def cancellable_sleep(seconds: float, cancel: threading.Event | None) -> None:
    """Wait ``seconds`` or until ``cancel`` is set.

    Raises:
        RequestCanceledError: If the cancellation event is set before or
            during the wait.
    """
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise RequestCanceledError("Canceled while waiting to retry")


def check_canceled(cancel: threading.Event | None, what: str) -> None:
    """Raise RequestCanceledError if ``cancel`` is already set."""
    if cancel is not None and cancel.is_set():
        raise RequestCanceledError(f"{what} canceled")
