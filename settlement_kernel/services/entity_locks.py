"""
EntityLocks -- in-process per-entity mutual exclusion.

Responsibility:
    Serialize settlements that touch the same funding source, document or
    counterparty within one process.  Combined with conditional UPDATE
    statements and, on PostgreSQL, ``FOR UPDATE`` row locks, this closes
    the check-then-debit window between two concurrent payments.

Invariants enforced:
    - Locks are always acquired in sorted key order, so two callers holding
      overlapping key sets cannot deadlock.
    - Locks are re-entrant for the owning thread.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from settlement_kernel.logging_config import get_logger

logger = get_logger("services.entity_locks")

LockKey = tuple[str, str]


class EntityLocks:
    """Registry of one re-entrant lock per ``(entity_type, entity_id)``."""

    def __init__(self) -> None:
        self._locks: dict[LockKey, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: LockKey) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: tuple[str, Any]) -> Iterator[None]:
        """Acquire every key (deduplicated, sorted) for the duration of the block."""
        ordered = sorted({(entity_type, str(entity_id)) for entity_type, entity_id in keys})
        acquired: list[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            logger.debug("entity_locks_acquired", extra={"lock_count": len(ordered)})
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()


_process_locks = EntityLocks()


def process_locks() -> EntityLocks:
    """The registry shared by every service instance in this process."""
    return _process_locks
