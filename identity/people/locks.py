# identity/people/locks.py
"""
Per-type critical sections for clustering decisions.

Two ingests of the same person's face must not both observe "no match yet"
and both found a new cluster. Every registry mutation therefore holds the
lock of each embedding type it may touch for the whole duration of its
transaction. Face and voice decisions never contend with each other.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from identity.errors import InvalidRequest, LockTimeout
from identity.people.models import CLUSTER_TYPES

logger = logging.getLogger(__name__)


class TypeLocks:
    """One mutex per embedding type."""

    def __init__(self, types: Iterable[str] = CLUSTER_TYPES, timeout: Optional[float] = None):
        self._locks: Dict[str, threading.Lock] = {t: threading.Lock() for t in types}
        self.timeout = timeout

    @property
    def types(self) -> List[str]:
        return sorted(self._locks)

    @contextmanager
    def hold(self, types: Iterable[str]) -> Iterator[None]:
        """
        Acquire the locks for `types`, always in sorted order.

        Raises LockTimeout if any lock is not acquired within `timeout`
        seconds; locks taken so far are released first.
        """
        wanted = sorted(set(types))
        for t in wanted:
            if t not in self._locks:
                raise InvalidRequest(f"Unknown embedding type: {t!r}")

        acquired: List[threading.Lock] = []
        try:
            for t in wanted:
                lock = self._locks[t]
                ok = lock.acquire(timeout=self.timeout) if self.timeout is not None else lock.acquire()
                if not ok:
                    logger.warning("timed out waiting for %s clustering lock", t)
                    raise LockTimeout(f"Timed out acquiring {t} clustering lock after {self.timeout}s")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    @contextmanager
    def hold_all(self) -> Iterator[None]:
        with self.hold(self.types):
            yield
