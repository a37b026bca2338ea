from __future__ import annotations

import contextlib
import threading
from typing import Dict, Iterator


class KeyedLock:
    """One mutex per key, released from the registry once no caller holds it.

    Used to serialize read-modify-write sequences for a single user without
    blocking unrelated users.
    """

    def __init__(self) -> None:
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}
        self._refcounts: Dict[str, int] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            self._refcounts[key] = self._refcounts.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._registry_lock:
                remaining = self._refcounts[key] - 1
                if remaining:
                    self._refcounts[key] = remaining
                else:
                    self._refcounts.pop(key, None)
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._locks)
