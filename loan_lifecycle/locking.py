"""
Per-Entity Locking

Serializes all mutations of a single Application, Loan or Contract without a
global lock. Locks are keyed by "<entity_type>:<entity_id>" and created on
first use.

Lock ordering used across the package (outer first):
application -> contract -> loan -> storage transaction.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .errors import Conflict


class EntityLockRegistry:
    """Registry of re-entrant locks, one per entity id"""

    def __init__(self, timeout: Optional[float] = None):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()
        self.timeout = timeout

    def _get(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, entity_type: str, entity_id: str) -> Iterator[None]:
        """
        Hold the lock for one entity.

        Raises Conflict if the lock cannot be acquired within the registry
        timeout (no timeout means wait indefinitely).
        """
        lock = self._get(f"{entity_type}:{entity_id}")
        acquired = lock.acquire(timeout=self.timeout) if self.timeout else lock.acquire()
        if not acquired:
            raise Conflict(f"Timed out waiting for {entity_type} {entity_id}")
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
