from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class _ReadWriteLock:
    """Many readers or one writer.  Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class DigestTracker:
    """Last observed digest per image key, shared by the per-image workers.

    Entries are never evicted; the key set is bounded by the configured images.
    """

    def __init__(self) -> None:
        self._lock = _ReadWriteLock()
        self._digests: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        with self._lock.read():
            return self._digests.get(key)

    def set(self, key: str, digest: str) -> str | None:
        """Record *digest* and return the value it replaced."""
        with self._lock.write():
            previous = self._digests.get(key)
            self._digests[key] = digest
            return previous

    def snapshot(self) -> dict[str, str]:
        with self._lock.read():
            return dict(self._digests)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._digests)
