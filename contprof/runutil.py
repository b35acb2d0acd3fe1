"""Helpers for running a function repeatedly on a fixed schedule."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from datetime import timedelta


def repeat(
    interval: float | timedelta,
    stop_event: threading.Event,
    func: Callable[[], object],
) -> None:
    """Call func once right away, then every interval seconds until stop_event is set.

    An exception raised by func ends the loop and propagates to the caller.
    """
    seconds = interval.total_seconds() if isinstance(interval, timedelta) else float(interval)
    if seconds <= 0:
        raise ValueError("non-positive interval for repeat")

    next_tick = time.monotonic() + seconds
    while True:
        func()
        if stop_event.wait(max(0.0, next_tick - time.monotonic())):
            return
        now = time.monotonic()
        next_tick += seconds
        if next_tick < now:
            # Missed ticks are dropped; the schedule resumes from now.
            next_tick = now + seconds