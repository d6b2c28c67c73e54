from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager

from jobledger.errors import OperationTimeout


class IdentityLocks:
    """Per-identity mutual exclusion.

    Locks are reference counted and dropped once nobody holds or waits on them.
    Multiple keys are always taken in sorted order.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._refs: dict[str, int] = {}

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
                self._refs[key] = 0
            self._refs[key] += 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if self._refs[key] == 0:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, *keys: str, timeout: float | None = None) -> Iterator[None]:
        ordered = sorted(set(keys))
        deadline = None if timeout is None else time.monotonic() + timeout
        acquired: list[tuple[str, threading.Lock]] = []
        try:
            for key in ordered:
                lock = self._checkout(key)
                if deadline is None:
                    ok = lock.acquire()
                else:
                    ok = lock.acquire(timeout=max(0.0, deadline - time.monotonic()))
                if not ok:
                    self._checkin(key)
                    raise OperationTimeout(f"timed out waiting for lock on {key}")
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)

    def active_keys(self) -> set[str]:
        with self._guard:
            return set(self._locks)
