"""Blocking wait loops with an injectable clock and cancellation.

Both waits in a session (the job publishing its connection message, and the
tunnel answering HTTP) are unbounded: a batch queue can hold a job for hours
and only the user knows when to give up.  Tests swap the clock for a fake one
so nothing actually sleeps.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Protocol, TypeVar

T = TypeVar("T")


class PollCancelled(Exception):
    pass


class CancelToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        return self._event.wait(seconds)


class Clock(Protocol):
    def sleep(self, seconds: float, cancel: CancelToken | None = None) -> None: ...


class SystemClock:
    def sleep(self, seconds: float, cancel: CancelToken | None = None) -> None:
        if cancel is None:
            time.sleep(seconds)
            return
        cancel.wait(seconds)


def poll_until(
    check: Callable[[], T | None],
    interval_seconds: float,
    *,
    clock: Clock | None = None,
    cancel: CancelToken | None = None,
) -> T:
    """Call ``check`` until it returns something other than ``None``.

    Sleeps ``interval_seconds`` between attempts.  Raises ``PollCancelled`` once
    ``cancel`` is set.
    """
    clock = clock or SystemClock()
    while True:
        if cancel is not None and cancel.cancelled:
            raise PollCancelled("wait cancelled")
        result = check()
        if result is not None:
            return result
        clock.sleep(interval_seconds, cancel)
