"""Per-document locks and per-item single-flight guards."""

import threading
from contextlib import contextmanager
from typing import Hashable, Iterator

from reeltrack.errors import OperationInProgressError


class LockRegistry:
    """
    Hands out one re-entrant lock per (user, kind) watchlist document, and
    tracks keys with an action in flight.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Hashable, threading.RLock] = {}
        self._in_flight: set = set()

    def document_lock(self, user_id: str, kind: str) -> threading.RLock:
        key = (user_id, kind)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    @contextmanager
    def single_flight(self, key: Hashable) -> Iterator[None]:
        """Run the body for key at most once at a time; a second caller gets OperationInProgressError."""
        with self._guard:
            if key in self._in_flight:
                raise OperationInProgressError(f"Already updating {key}")
            self._in_flight.add(key)
        try:
            yield
        finally:
            with self._guard:
                self._in_flight.discard(key)


# Shared by every manager in the process unless one is injected
default_registry = LockRegistry()
