from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class UserLocks:
    """One lock per user guarding token refresh and cache read-modify-write."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def lock_for(self, user_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, user_id: str) -> Iterator[None]:
        lock = self.lock_for(user_id)
        with lock:
            yield
