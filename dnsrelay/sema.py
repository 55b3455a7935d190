"""Semaphores that bound the number of concurrent request handlers."""

from __future__ import annotations

import threading


class NoopSemaphore:
    """A semaphore without a limit; it only counts its holders."""

    def __init__(self) -> None:
        self._held = 0
        self._lock = threading.Lock()

    @property
    def held(self) -> int:
        """Number of holders at the moment."""
        return self._held

    def acquire(self) -> None:
        """Never blocks."""
        with self._lock:
            self._held += 1

    def release(self) -> None:
        """Never blocks; ignored when nothing is held."""
        with self._lock:
            if self._held > 0:
                self._held -= 1

    def __enter__(self) -> "NoopSemaphore":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class LimitedSemaphore:
    """A semaphore allowing at most max_res holders at a time.

    acquire blocks until a slot is free; release never blocks and is
    ignored when nothing is held.
    """

    def __init__(self, max_res: int) -> None:
        if max_res < 1:
            raise ValueError(f"bad maxRes: {max_res}")
        self._max = max_res
        self._held = 0
        self._cond = threading.Condition()

    def acquire(self) -> None:
        with self._cond:
            while self._held >= self._max:
                self._cond.wait()
            self._held += 1

    def release(self) -> None:
        with self._cond:
            if self._held > 0:
                self._held -= 1
                self._cond.notify()

    def __enter__(self) -> "LimitedSemaphore":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()