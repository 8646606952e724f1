"""In-process locks serializing mutations of a single permit.

Database row locks and the permit ``version`` column protect against other
processes; these locks keep threads of one process from racing on the same
permit before the database gets involved.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator


class PermitLocks:
    """Registry of one lock per permit id, kept only while someone holds or awaits it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.Lock] = {}
        self._holders: Dict[Hashable, int] = {}

    def _acquire_entry(self, permit_id: Hashable) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(permit_id)
            if lock is None:
                lock = self._locks[permit_id] = threading.Lock()
            self._holders[permit_id] = self._holders.get(permit_id, 0) + 1
            return lock

    def _release_entry(self, permit_id: Hashable) -> None:
        with self._guard:
            remaining = self._holders[permit_id] - 1
            if remaining:
                self._holders[permit_id] = remaining
            else:
                del self._holders[permit_id]
                del self._locks[permit_id]

    @contextmanager
    def hold(self, permit_id: Hashable) -> Iterator[None]:
        """Hold the permit's lock for the duration of the block, releasing it on every exit path."""
        lock = self._acquire_entry(permit_id)
        try:
            with lock:
                yield
        finally:
            self._release_entry(permit_id)

    def __len__(self) -> int:
        """Number of permits currently held or waited on."""
        with self._guard:
            return len(self._locks)


# Shared by every service in the process unless one is injected
default_locks = PermitLocks()

# Guards serial number assignment, independent of any permit lock
serial_lock = threading.Lock()
