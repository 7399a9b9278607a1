"""Semaphores that limit the number of requests handled at once."""

from __future__ import annotations

import threading


class _SemaphoreBase:
    def acquire(self) -> None:  # pragma: no cover - overridden
        raise NotImplementedError

    def release(self) -> None:  # pragma: no cover - overridden
        raise NotImplementedError

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class NoopSemaphore(_SemaphoreBase):
    """A semaphore without a limit."""

    def acquire(self) -> None:
        """Return at once."""

    def release(self) -> None:
        """Return at once."""


class LimitSemaphore(_SemaphoreBase):
    """A semaphore allowing at most ``max_res`` holders.

    ``acquire`` blocks until a slot is free; ``release`` never blocks and does
    nothing when no slot is held.
    """

    def __init__(self, max_res: int) -> None:
        if max_res < 1:
            raise ValueError(f"bad max_res: {max_res}")
        self.max_res = max_res
        self._in_use = 0
        self._cond = threading.Condition()

    def acquire(self) -> None:
        with self._cond:
            while self._in_use >= self.max_res:
                self._cond.wait()
            self._in_use += 1

    def release(self) -> None:
        with self._cond:
            if self._in_use:
                self._in_use -= 1
                self._cond.notify()


def new_semaphore(max_res: int) -> LimitSemaphore:
    """Return a semaphore limited to ``max_res``, which must be positive."""
    return LimitSemaphore(max_res)