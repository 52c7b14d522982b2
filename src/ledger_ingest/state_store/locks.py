"""
Per-account writer locks.

One writer at a time per account inside this process; imports touching
different accounts run in parallel. Locks are always taken in sorted
account id order so two multi-account imports cannot deadlock.
"""

import logging
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from typing import Optional

from ..errors import AccountBusyError

logger = logging.getLogger(__name__)


class AccountLocks:
    """Registry of exclusive locks keyed by canonical account id."""

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def is_locked(self, account_id: str) -> bool:
        return self._lock_for(account_id).locked()

    @contextmanager
    def hold(self, account_ids: Iterable[str], timeout: Optional[float] = None) -> Iterator[list[str]]:
        """
        Hold the locks of every account in ``account_ids``.

        Raises:
            AccountBusyError: A lock was not acquired within ``timeout`` seconds
        """
        ordered = sorted(set(account_ids))
        acquired: list[threading.Lock] = []
        try:
            for account_id in ordered:
                lock = self._lock_for(account_id)
                ok = lock.acquire(timeout=timeout) if timeout is not None else lock.acquire()
                if not ok:
                    raise AccountBusyError(
                        f"Account {account_id} is locked by another import (waited {timeout}s)"
                    )
                acquired.append(lock)
            logger.debug(f"Holding locks for {len(ordered)} account(s)")
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
