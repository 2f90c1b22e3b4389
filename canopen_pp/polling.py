"""Cooperative waiting shared by every bounded loop in the package.

All waits are single-threaded: the caller blocks, checks the optional stop
flag between attempts and never overruns its deadline by more than one
attempt.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(slots=True)
class PollOutcome(Generic[T]):
    value: Optional[T] = None
    attempts: int = 0
    timed_out: bool = False
    cancelled: bool = False

    @property
    def done(self) -> bool:
        return self.value is not None


def _pause(duration: float, stop_event: Optional[threading.Event]) -> bool:
    """Sleep for ``duration``; returns False when the stop flag was raised."""
    if stop_event is None:
        time.sleep(duration)
        return True
    return not stop_event.wait(duration)


def settle(duration: float, stop_event: Optional[threading.Event] = None) -> bool:
    """Fixed wait that ends early when the stop flag is raised."""
    if stop_event is not None and stop_event.is_set():
        return False
    if duration <= 0:
        return True
    return _pause(duration, stop_event)


def poll_until(
    probe: Callable[[float], Optional[T]],
    timeout: float,
    interval: float = 0.0,
    *,
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
    stop_event: Optional[threading.Event] = None,
) -> PollOutcome[T]:
    """Call ``probe(remaining)`` until it returns something other than None.

    ``probe`` gets the seconds left before the deadline so blocking probes can
    clip their own wait. Between attempts the loop sleeps ``interval``,
    multiplied by ``backoff`` after every miss and capped by ``max_interval``.
    """
    deadline = time.monotonic() + timeout
    delay = interval
    attempts = 0
    while True:
        if stop_event is not None and stop_event.is_set():
            return PollOutcome(attempts=attempts, cancelled=True)
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return PollOutcome(attempts=attempts, timed_out=True)

        attempts += 1
        value = probe(remaining)
        if value is not None:
            return PollOutcome(value=value, attempts=attempts)

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return PollOutcome(attempts=attempts, timed_out=True)
        pause = min(delay, remaining)
        if pause > 0 and not _pause(pause, stop_event):
            return PollOutcome(attempts=attempts, cancelled=True)
        delay *= backoff
        if max_interval is not None:
            delay = min(delay, max_interval)
