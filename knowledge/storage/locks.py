# Path: knowledge/storage/locks.py
# Purpose: Provide a reader/writer lock for the collection registry, collections, and tag pools.
# Layer: knowledge/storage.
# Details: Reader-preferring lock on threading.Condition with optional acquisition timeouts.

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from knowledge.errors import LockContentionError


class RWLock:
    """Many concurrent readers or one writer.

    The lock is not re-entrant: a thread holding the write side must not acquire either side again.
    ``timeout`` (seconds) bounds every acquisition; ``None`` waits forever.
    """

    def __init__(self, name: str = "lock", timeout: Optional[float] = None) -> None:
        self.name = name
        self.timeout = timeout
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    def acquire_read(self, timeout: Optional[float] = None) -> None:
        with self._cond:
            if not self._cond.wait_for(lambda: not self._writer, self._resolve(timeout)):
                raise LockContentionError(f"Timed out acquiring read lock on {self.name}")
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self, timeout: Optional[float] = None) -> None:
        with self._cond:
            ready = self._cond.wait_for(lambda: not self._writer and self._readers == 0, self._resolve(timeout))
            if not ready:
                raise LockContentionError(f"Timed out acquiring write lock on {self.name}")
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self, timeout: Optional[float] = None) -> Iterator[None]:
        self.acquire_read(timeout)
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self, timeout: Optional[float] = None) -> Iterator[None]:
        self.acquire_write(timeout)
        try:
            yield
        finally:
            self.release_write()

    def _resolve(self, timeout: Optional[float]) -> Optional[float]:
        return self.timeout if timeout is None else timeout


__all__ = ["RWLock"]
