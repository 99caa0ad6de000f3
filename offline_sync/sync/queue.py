"""
In-memory operation queue mirrored to a persistent key/value store.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from offline_sync.sync.exceptions import CapacityExceeded
from offline_sync.sync.operations import Operation, utcnow

if TYPE_CHECKING:
    from offline_sync.stores import PersistentStore

logger = logging.getLogger(__name__)

KEY_PREFIX = "offline_op_"


class OperationQueue:
    """
    Pending operations keyed by id.

    Every add/remove/save is written through to the persistent store under
    the same lock, so the queue is the single point of serialization for
    submissions, cancellations and sync passes within a process. Across
    processes the persisted entries are authoritative: saves never
    resurrect a deleted entry, and ``refresh()`` re-reads them.
    """

    def __init__(
        self,
        store: PersistentStore,
        max_size: int = 1000,
        retention: timedelta = timedelta(days=7),
        prioritize: bool = True,
    ):
        self.store = store
        self.max_size = max_size
        self.retention = retention
        self.prioritize = prioritize
        self._operations: dict[str, Operation] = {}
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        """Held while applying a sync result so cancellation cannot interleave."""
        return self._lock

    @staticmethod
    def _key(operation_id: str) -> str:
        return f"{KEY_PREFIX}{operation_id}"

    def load(self, now: datetime | None = None) -> int:
        """
        Rebuild the in-memory queue from the persistent store.

        Entries past the retention window, or that fail to decode, are
        deleted from the store. Returns the number of operations loaded.
        """
        now = now or utcnow()
        loaded = 0

        with self._lock:
            self._operations.clear()
            for key in self.store.list_by_prefix(KEY_PREFIX):
                raw = self.store.get(key)
                if raw is None:
                    continue

                try:
                    operation = Operation.from_json(raw)
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Discarding unreadable queue entry {key}: {e}")
                    self.store.delete(key)
                    continue

                if now - operation.created_at > self.retention:
                    logger.info(f"Discarding expired operation {operation.id}")
                    self.store.delete(key)
                    continue

                self._operations[operation.id] = operation
                loaded += 1

        if loaded:
            logger.info(f"Loaded {loaded} pending operation(s) from storage")
        return loaded

    def add(self, operation: Operation, now: datetime | None = None) -> None:
        """
        Queue and persist an operation.

        Raises:
            CapacityExceeded: If the queue is full and nothing is old enough to purge
        """
        with self._lock:
            if len(self._operations) >= self.max_size:
                self.purge_expired(now)
                if len(self._operations) >= self.max_size:
                    raise CapacityExceeded(
                        f"Queue holds {len(self._operations)} operations (max {self.max_size})"
                    )

            self._operations[operation.id] = operation
            self.store.put(self._key(operation.id), operation.to_json())

    def save(self, operation: Operation) -> bool:
        """
        Persist changed counters for a queued operation.

        Only rewrites an entry that still exists. If another process
        deleted it (cancelled it), the operation is dropped here too and
        False is returned.
        """
        with self._lock:
            if operation.id not in self._operations:
                return False
            if not self.store.replace(self._key(operation.id), operation.to_json()):
                self._operations.pop(operation.id, None)
                logger.info(f"Operation {operation.id} was removed from storage elsewhere")
                return False
            return True

    def remove(self, operation_id: str) -> Operation | None:
        """
        Remove an operation from the queue and its persisted entry.

        Works without a prior ``load()``, so another process can cancel
        by id.
        """
        key = self._key(operation_id)
        with self._lock:
            operation = self._operations.pop(operation_id, None)
            if operation is None:
                raw = self.store.get(key)
                if raw is None:
                    return None
                try:
                    operation = Operation.from_json(raw)
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Removing unreadable queue entry {key}: {e}")
                    operation = None
            self.store.delete(key)
            return operation

    def was_removed(self, operation_id: str) -> bool:
        """
        True if the operation is no longer queued here or in storage.

        An operation whose entry was deleted by another process is
        dropped from memory as a side effect.
        """
        with self._lock:
            if operation_id not in self._operations:
                return True
            if self.store.get(self._key(operation_id)) is None:
                self._operations.pop(operation_id, None)
                logger.info(f"Operation {operation_id} was removed from storage elsewhere")
                return True
            return False

    def refresh(self) -> int:
        """
        Bring the in-memory queue in line with the persistent store.

        Picks up operations other processes submitted, changed or removed.
        Unchanged operations keep their in-memory objects. Returns the
        number of queued operations.
        """
        with self._lock:
            keys = set(self.store.list_by_prefix(KEY_PREFIX))
            for operation_id in list(self._operations):
                if self._key(operation_id) not in keys:
                    del self._operations[operation_id]

            for key in sorted(keys):
                raw = self.store.get(key)
                if raw is None:
                    continue
                current = self._operations.get(key[len(KEY_PREFIX):])
                if current is not None and current.to_json() == raw:
                    continue
                try:
                    operation = Operation.from_json(raw)
                except (ValueError, KeyError, TypeError) as e:
                    logger.warning(f"Skipping unreadable queue entry {key}: {e}")
                    continue
                self._operations[operation.id] = operation

            return len(self._operations)

    def get(self, operation_id: str) -> Operation | None:
        with self._lock:
            return self._operations.get(operation_id)

    def __contains__(self, operation_id: str) -> bool:
        with self._lock:
            return operation_id in self._operations

    def __len__(self) -> int:
        with self._lock:
            return len(self._operations)

    def all(self) -> list[Operation]:
        with self._lock:
            return list(self._operations.values())

    def clear(self) -> int:
        with self._lock:
            ids = list(self._operations)
            for operation_id in ids:
                self.remove(operation_id)
            return len(ids)

    def purge_expired(self, now: datetime | None = None) -> int:
        """Drop operations older than the retention window, oldest first."""
        now = now or utcnow()
        with self._lock:
            expired = sorted(
                (
                    op
                    for op in self._operations.values()
                    if now - op.created_at > self.retention
                ),
                key=lambda op: op.created_at,
            )
            for operation in expired:
                self.remove(operation.id)

        if expired:
            logger.info(f"Purged {len(expired)} expired operation(s)")
        return len(expired)

    def sort_key(self, operation: Operation):
        if self.prioritize:
            return (-operation.priority, operation.created_at, operation.id)
        return (operation.created_at, operation.id)

    def dependencies_satisfied(self, operation: Operation) -> bool:
        with self._lock:
            return not any(dep in self._operations for dep in operation.dependencies)

    def sorted_for_sync(self) -> list[Operation]:
        """
        Operations ready to dispatch, in dispatch order.

        Ordered by descending priority, then ascending creation time.
        Operations with a dependency still in the queue, or held on a
        manual conflict, are left out.
        """
        with self._lock:
            pending = set(self._operations)
            ready = [
                op
                for op in self._operations.values()
                if not op.is_blocked_on_conflict and not (op.dependencies & pending)
            ]
        return sorted(ready, key=self.sort_key)

    def storage_used(self) -> int:
        """Bytes of persisted operation JSON."""
        total = 0
        for key in self.store.list_by_prefix(KEY_PREFIX):
            raw = self.store.get(key)
            if raw:
                total += len(raw.encode("utf-8"))
        return total
