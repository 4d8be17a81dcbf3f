"""Mutual exclusion keyed by identifier."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class LockByID:
    """Lock held per ID: callers with the same ID exclude each other,
    callers with different IDs proceed independently."""

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._locked: set[str] = set()

    def lock(self, id: str) -> None:
        with self._cond:
            self._cond.wait_for(lambda: id not in self._locked)
            self._locked.add(id)

    def unlock(self, id: str) -> None:
        with self._cond:
            if id not in self._locked:
                raise RuntimeError(f"BUG: try to unlock not taken lock, id={id}")
            self._locked.discard(id)
            self._cond.notify_all()

    @contextmanager
    def hold(self, id: str) -> Iterator[None]:
        """Hold the lock for ``id`` for the duration of the block."""
        self.lock(id)
        try:
            yield
        finally:
            self.unlock(id)