"""
Per-key mutex registry.

Subscription aggregates are read-modify-written from ingestion workers, the
card reconciler, review resolution and the lifecycle sweeper. All of them take
the lock for (user_id, service_normalized) before touching a row.
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Iterator
from contextlib import contextmanager

from subtrack.observability.telemetry import counter


class KeyedLocks:
    """Lazily created threading.Lock per key, guarded by a registry lock."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.Lock] = {}

    def _lock_for(self, key: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(blocking=False):
            counter("locks.contended")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


# Shared by every writer of subscription rows in this process
subscription_locks = KeyedLocks()
