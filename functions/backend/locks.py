"""
Per-identity mutual exclusion.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLock:
    """
    Hands out one lock per key, dropping it once nobody holds or waits on it.

    Work for the same identity is serialized; different identities never
    contend beyond the short bookkeeping section.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refs: Dict[str, int] = {}

    def _acquire_ref(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._refs[key] = self._refs.get(key, 0) + 1
            return lock

    def _release_ref(self, key: str) -> None:
        with self._guard:
            self._refs[key] -= 1
            if not self._refs[key]:
                del self._refs[key]
                del self._locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._acquire_ref(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            self._release_ref(key)

    @contextmanager
    def try_hold(self, key: str) -> Iterator[bool]:
        """Like hold(), but yields False at once if the key is taken."""
        lock = self._acquire_ref(key)
        acquired = lock.acquire(blocking=False)
        try:
            yield acquired
        finally:
            if acquired:
                lock.release()
            self._release_ref(key)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
