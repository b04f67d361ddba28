# Overview: Locking and retry helpers shared by every write path.

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Hashable, Iterable

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import StorageFailure
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts on version_id columns). The session is
    rolled back before each retry, so func must redo all of its reads.
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc


class RowLockRegistry:
    """
    In-process mutual exclusion keyed by row identity, e.g. (tenant_id, product_id).

    Locks for disjoint keys are independent. hold() acquires keys in sorted
    order so multi-key holders cannot deadlock, and gives up with
    StorageFailure once the shared deadline passes. A key's lock lives only
    while someone holds or waits for it.
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, holders + waiters]
        self._locks: dict[Hashable, list] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: Hashable) -> threading.Lock:
        with self._guard:
            slot = self._locks.get(key)
            if slot is None:
                slot = [threading.Lock(), 0]
                self._locks[key] = slot
            slot[1] += 1
            return slot[0]

    def _checkin(self, key: Hashable) -> None:
        with self._guard:
            slot = self._locks[key]
            slot[1] -= 1
            if slot[1] == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, keys: Iterable[Hashable], *, timeout: float):
        acquired: list[tuple[Hashable, threading.Lock]] = []
        deadline = time.monotonic() + timeout
        try:
            for key in sorted(set(keys)):
                remaining = max(0.0, deadline - time.monotonic())
                lock = self._checkout(key)
                if not lock.acquire(timeout=remaining):
                    self._checkin(key)
                    raise StorageFailure(
                        "timed out waiting for row lock",
                        details={"key": list(key) if isinstance(key, tuple) else key, "timeout_seconds": timeout},
                    )
                acquired.append((key, lock))
            yield
        finally:
            for key, lock in reversed(acquired):
                lock.release()
                self._checkin(key)


def get_product_locks() -> RowLockRegistry:
    """Per-application registry of (tenant_id, product_id) locks."""
    return current_app.extensions["stockledger"]["product_locks"]


def lock_timeout() -> float:
    return float(current_app.config.get("LOCK_TIMEOUT_SECONDS", 5))
