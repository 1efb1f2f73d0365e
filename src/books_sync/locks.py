"""Per-record advisory locks."""

import threading
from contextlib import contextmanager
from typing import Iterator

from books_sync.exceptions import RecordLockedError


class RecordLockRegistry:
    """
    Keyed mutex map: one lock per local record id.

    A webhook and a manual click can target the same record at the same
    time. The sync for one record spans several remote calls, so the lock
    is held for the whole attempt. Acquisition fails fast by default.

    Example:
        locks = RecordLockRegistry()
        with locks.hold("1042"):
            ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._holders: dict[str, int] = {}

    @contextmanager
    def hold(self, record_id: str, wait: float = 0.0) -> Iterator[None]:
        """
        Hold the lock for ``record_id``.

        Raises:
            RecordLockedError: Held by another caller after ``wait`` seconds
        """
        key = str(record_id)
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._holders[key] = self._holders.get(key, 0) + 1

        try:
            acquired = lock.acquire(timeout=wait) if wait > 0 else lock.acquire(blocking=False)
            if not acquired:
                raise RecordLockedError(f"Record {key} is already being synced")
            try:
                yield
            finally:
                lock.release()
        finally:
            with self._guard:
                self._holders[key] -= 1
                if self._holders[key] == 0:
                    del self._holders[key]
                    del self._locks[key]

    def is_locked(self, record_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(str(record_id))
        return bool(lock and lock.locked())
