"""
Offline operation queue and sync engine.

Callers submit inserts, updates and deletes; the engine persists them,
replays them against the remote store when connectivity allows, and
reconciles updates/deletes with whatever changed remotely in between.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

from offline_sync.sync.config import SyncConfig
from offline_sync.sync.conflict_resolver import ConflictResolver
from offline_sync.sync.connectivity import ConnectivityMonitor, ConnectivityProbe, StaticProbe
from offline_sync.sync.exceptions import (
    ConflictUnresolved,
    DependencyNeverResolved,
    InvalidOperationError,
    OfflineModeDisabled,
    OperationNotFound,
    RecordNotFound,
    SyncAbortedError,
)
from offline_sync.sync.operations import (
    Action,
    ExecutionResult,
    Operation,
    OperationStatus,
    OperationType,
    Priority,
    SyncResult,
    new_operation_id,
    record_id_for,
    utcnow,
)
from offline_sync.sync.queue import OperationQueue
from offline_sync.sync.remote import TimeoutRemote
from offline_sync.sync.scheduler import PassRecorder, PassReport, SyncScheduler, SyncStats

if TYPE_CHECKING:
    from offline_sync.stores import PersistentStore
    from offline_sync.sync.remote import ConflictNotifier, RemoteStore

logger = logging.getLogger(__name__)

StatsListener = Callable[[SyncStats], None]


class EngineState(str, Enum):
    OFFLINE = "offline"
    ONLINE_IDLE = "online_idle"
    ONLINE_SYNCING = "online_syncing"


class SyncEngine:
    """
    Facade over the queue, connectivity monitor, conflict resolver and
    scheduler.

    Collaborators are injected; nothing here is a module-level singleton.
    The engine is passive until ``start()`` launches the timer thread;
    ``force_sync()`` works either way.
    """

    def __init__(
        self,
        remote: RemoteStore,
        store: PersistentStore,
        probe: ConnectivityProbe | None = None,
        notifier: ConflictNotifier | None = None,
        config: SyncConfig | None = None,
        recorder: PassRecorder | None = None,
    ):
        self.config = config or SyncConfig()
        self.remote = TimeoutRemote(remote, timeout=self.config.request_timeout)
        self.notifier = notifier

        self.queue = OperationQueue(
            store,
            max_size=self.config.max_operations,
            retention=timedelta(days=self.config.retention_days),
            prioritize=self.config.prioritize_operations,
        )
        self.queue.load()

        self.monitor = ConnectivityMonitor(probe or StaticProbe(online=True))
        self.resolver = ConflictResolver(
            strategy=self.config.conflict_strategy,
            volatile_fields=self.config.volatile_fields,
            timestamp_fields=self.config.timestamp_fields,
        )

        self.stats = SyncStats()
        self.scheduler = SyncScheduler(
            self.queue,
            self.sync_operation,
            self.monitor,
            self.stats,
            interval=self.config.sync_interval,
            retry_delay=self.config.retry_delay,
            retry_delay_max=self.config.retry_delay_max,
            fail_fast_on_permanent=self.config.fail_fast_on_permanent,
            on_pass_complete=self._on_pass_complete,
            recorder=recorder,
            lock_ttl=self.config.pass_lock_ttl,
        )

        self._listeners: list[StatsListener] = []
        self._listeners_lock = threading.Lock()
        self._clock_lock = threading.Lock()
        self._last_created_at: datetime | None = None
        self._closed = False

        self.monitor.subscribe(self._on_connectivity_change)

    # --- Lifecycle ---

    def start(self) -> None:
        self._ensure_open()
        self.scheduler.start()
        if self.monitor.is_online() and len(self.queue):
            self.scheduler.trigger()

    def shutdown(self) -> None:
        """Stop the timer, detach from connectivity events and drop subscribers."""
        if self._closed:
            return
        self._closed = True
        self.scheduler.stop()
        self.monitor.unsubscribe(self._on_connectivity_change)
        self.remote.close()
        with self._listeners_lock:
            self._listeners.clear()
        logger.info("Sync engine shut down")

    def _ensure_open(self) -> None:
        if self._closed:
            raise SyncAbortedError("Sync engine has been shut down")

    @property
    def state(self) -> EngineState:
        if not self.monitor.is_online():
            return EngineState.OFFLINE
        if self.scheduler.in_flight:
            return EngineState.ONLINE_SYNCING
        return EngineState.ONLINE_IDLE

    def is_online(self) -> bool:
        return self.monitor.is_online()

    # --- Submission ---

    def _next_timestamp(self) -> datetime:
        """Wall-clock time, nudged forward so submissions never share a timestamp."""
        with self._clock_lock:
            now = utcnow()
            if self._last_created_at is not None and now <= self._last_created_at:
                now = self._last_created_at + timedelta(microseconds=1)
            self._last_created_at = now
            return now

    def submit(
        self,
        table: str,
        action: Action | str,
        payload: dict[str, Any],
        *,
        priority: Priority | int = Priority.NORMAL,
        dependencies: Iterable[str] = (),
        baseline: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
        max_retries: int | None = None,
        operation_type: OperationType = OperationType.USER_ACTION,
    ) -> str:
        """
        Queue a mutation and persist it immediately.

        Returns:
            The new operation id

        Raises:
            OfflineModeDisabled: If offline mode is turned off
            InvalidOperationError: If the action is unknown, or an update/delete has no record id
            CapacityExceeded: If the queue is full
        """
        self._ensure_open()
        if not self.config.enable_offline_mode:
            raise OfflineModeDisabled("Offline mode is disabled")

        try:
            action = Action(action)
            priority = Priority(priority)
        except ValueError as e:
            raise InvalidOperationError(str(e)) from e

        operation = Operation(
            id=new_operation_id(),
            table=table,
            action=action,
            payload=dict(payload or {}),
            baseline=dict(baseline) if baseline is not None and action != Action.INSERT else None,
            created_at=self._next_timestamp(),
            max_retries=self.config.max_retries if max_retries is None else max_retries,
            priority=priority,
            dependencies=frozenset(dependencies),
            metadata=dict(metadata or {}),
            type=operation_type,
        )

        if action != Action.INSERT and operation.record_id is None:
            raise InvalidOperationError(
                f"{action.value} on {table} needs an 'id' in payload or baseline"
            )

        self.queue.add(operation)
        logger.debug(
            f"Queued {action.value} on {table} as {operation.id} "
            f"(priority={priority.name}, deps={len(operation.dependencies)})"
        )

        if self.config.sync_on_submit and self.monitor.is_online():
            self.scheduler.trigger()

        self._notify_listeners()
        return operation.id

    def execute(
        self,
        table: str,
        action: Action | str,
        payload: dict[str, Any],
        *,
        force_offline: bool = False,
        **options,
    ) -> ExecutionResult:
        """
        Write straight to the remote store when online, else queue.

        The target row is found the same way as for queued operations:
        payload ``id``, else ``baseline["id"]``. A direct write that fails
        is queued and the error re-raised.

        Raises:
            InvalidOperationError: If the action is unknown, or an update/delete has no record id
        """
        self._ensure_open()
        try:
            action = Action(action)
        except ValueError as e:
            raise InvalidOperationError(str(e)) from e

        if force_offline or not self.monitor.is_online():
            operation_id = self.submit(table, action, payload, **options)
            return ExecutionResult(queued=True, operation_id=operation_id)

        record_id = None
        if action != Action.INSERT:
            record_id = record_id_for(payload or {}, options.get("baseline"))
            if record_id is None:
                raise InvalidOperationError(
                    f"{action.value} on {table} needs an 'id' in payload or baseline"
                )

        try:
            snapshot = self._write(table, action, record_id, payload)
        except Exception as e:
            logger.warning(f"Direct {action.value} on {table} failed, queueing: {e}")
            self.submit(table, action, payload, **options)
            raise

        logger.debug(f"Executed {action.value} on {table} directly")
        return ExecutionResult(queued=False, snapshot=snapshot)

    def cancel(self, operation_id: str) -> bool:
        """Remove a queued operation. True only if it was still queued."""
        operation = self.queue.remove(operation_id)
        if operation is None:
            return False

        logger.info(f"Operation {operation_id} cancelled")
        self._notify_listeners()
        return True

    def clear(self) -> int:
        """Drop every queued operation."""
        count = self.queue.clear()
        logger.info(f"Cleared {count} queued operation(s)")
        self._notify_listeners()
        return count

    def pending_operations(self) -> list[Operation]:
        return sorted(self.queue.all(), key=self.queue.sort_key)

    # --- Syncing ---

    def force_sync(self) -> PassReport:
        """
        Run a pass now, regardless of the timer or connectivity state.

        Returns a skipped report if another pass is already in flight.
        """
        self._ensure_open()
        self.monitor.check()
        return self.scheduler.force_sync()

    def _write(self, table: str, action: Action, record_id: Any, payload: dict[str, Any]) -> Any:
        if action == Action.INSERT:
            return self.remote.insert(table, payload)
        if action == Action.UPDATE:
            return self.remote.update(table, record_id, payload)
        self.remote.delete(table, record_id)
        return None

    def sync_operation(self, operation: Operation) -> SyncResult:
        """
        Send one operation to the remote store.

        Inserts go straight through. Updates and deletes first fetch the
        remote row: a missing row means there is nothing left to do, and a
        changed row goes through the conflict resolver.
        """
        try:
            if operation.action == Action.INSERT:
                snapshot = self._write(operation.table, operation.action, None, operation.payload)
                return SyncResult(success=True, operation_id=operation.id, remote_snapshot=snapshot)

            try:
                current = self.remote.fetch_by_id(operation.table, operation.record_id)
            except RecordNotFound:
                current = None

            if current is None:
                logger.info(
                    f"{operation.table}/{operation.record_id} no longer exists remotely, "
                    f"treating {operation.action.value} {operation.id} as done"
                )
                return SyncResult(success=True, operation_id=operation.id)

            resolution = None
            payload = operation.payload

            if self.config.enable_conflict_resolution:
                fields = self.resolver.detect(operation, current)
                if fields:
                    resolution = self.resolver.resolve(
                        operation, current, conflicting_fields=fields
                    )
                    if resolution is None:
                        self._notify_conflict(operation, fields, current)
                        return SyncResult(
                            success=False,
                            operation_id=operation.id,
                            error=ConflictUnresolved(operation.id, fields),
                            remote_snapshot=current,
                        )
                    if resolution.remote_wins:
                        logger.info(
                            f"Remote state kept for {operation.id} "
                            f"({resolution.strategy.value}, fields={fields})"
                        )
                        return SyncResult(
                            success=True,
                            operation_id=operation.id,
                            conflict_resolution=resolution,
                            remote_snapshot=current,
                        )
                    payload = resolution.resolved_payload

            snapshot = self._write(operation.table, operation.action, operation.record_id, payload)
            return SyncResult(
                success=True,
                operation_id=operation.id,
                conflict_resolution=resolution,
                remote_snapshot=snapshot,
            )

        except Exception as e:
            logger.warning(f"Sync of operation {operation.id} failed: {e}")
            return SyncResult(success=False, operation_id=operation.id, error=e)

    def _notify_conflict(
        self, operation: Operation, fields: list[str], remote_snapshot: dict[str, Any]
    ) -> None:
        logger.warning(
            f"Conflict on {operation.table}/{operation.record_id} held for manual "
            f"resolution (operation {operation.id}, fields: {', '.join(fields)})"
        )
        if self.notifier is None:
            return
        try:
            self.notifier.notify(operation.id, fields, operation.payload, remote_snapshot)
        except Exception as e:
            logger.warning(f"Conflict notifier failed for {operation.id}: {e}", exc_info=True)

    # --- Manual conflicts and starvation ---

    def resolve_conflict(self, operation_id: str, payload: dict[str, Any] | None = None) -> Operation:
        """
        Release an operation held on a manual conflict.

        The remote row seen at conflict time becomes the new baseline, so
        the next pass writes ``payload`` (or the original payload) unless
        the row has changed again since.
        """
        self._ensure_open()
        with self.queue.lock:
            operation = self.queue.get(operation_id)
            if operation is None:
                raise OperationNotFound(f"Operation {operation_id} is not queued")
            if not operation.is_blocked_on_conflict:
                raise InvalidOperationError(
                    f"Operation {operation_id} is not awaiting conflict resolution"
                )

            if payload is not None:
                operation.payload = dict(payload)
            operation.baseline = operation.conflict_snapshot
            operation.conflict_snapshot = None
            operation.status = OperationStatus.PENDING
            if not self.queue.save(operation):
                raise OperationNotFound(f"Operation {operation_id} is not queued")

        mark_resolved = getattr(self.notifier, "mark_resolved", None)
        if mark_resolved is not None:
            try:
                mark_resolved(operation_id)
            except Exception as e:
                logger.warning(f"Failed to mark conflict {operation_id} resolved: {e}")

        logger.info(f"Conflict on operation {operation_id} resolved, requeued")
        if self.monitor.is_online():
            self.scheduler.trigger()
        self._notify_listeners()
        return operation

    def blocked_operations(self) -> list[DependencyNeverResolved]:
        """
        Operations whose dependencies cannot clear without intervention.

        A dependency held on a manual conflict never leaves the queue on
        its own; neither does anything that depends on it, transitively.
        """
        operations = {op.id: op for op in self.queue.all()}
        stuck = {op_id for op_id, op in operations.items() if op.is_blocked_on_conflict}
        starved: dict[str, list[str]] = {}

        changed = True
        while changed:
            changed = False
            for op_id, op in operations.items():
                if op_id in starved or op_id in stuck:
                    continue
                blockers = sorted(
                    dep for dep in op.dependencies if dep in stuck or dep in starved
                )
                if blockers:
                    starved[op_id] = blockers
                    changed = True

        return [DependencyNeverResolved(op_id, blockers) for op_id, blockers in starved.items()]

    # --- Stats and subscribers ---

    def get_stats(self) -> SyncStats:
        with self.scheduler.stats_lock:
            stats = dataclasses.replace(self.stats)
        operations = self.queue.all()
        stats.is_online = self.monitor.is_online()
        stats.pending_operations = len(operations)
        stats.blocked_operations = sum(1 for op in operations if op.is_blocked_on_conflict)
        stats.storage_used = self.queue.storage_used()
        return stats

    def subscribe(self, listener: StatsListener) -> None:
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: StatsListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify_listeners(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        if not listeners:
            return

        stats = self.get_stats()
        for listener in listeners:
            try:
                listener(stats)
            except Exception as e:
                logger.warning(f"Stats listener failed: {e}", exc_info=True)

    def _on_pass_complete(self, report: PassReport) -> None:
        self._notify_listeners()

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.scheduler.trigger()
        self._notify_listeners()

    # --- Configuration ---

    def get_config(self) -> SyncConfig:
        return dataclasses.replace(self.config)

    def update_config(self, **changes) -> SyncConfig:
        """Apply config changes to the running engine."""
        self.config = dataclasses.replace(self.config, **changes)

        self.queue.max_size = self.config.max_operations
        self.queue.retention = timedelta(days=self.config.retention_days)
        self.queue.prioritize = self.config.prioritize_operations

        self.resolver.strategy = self.config.conflict_strategy
        self.resolver.volatile_fields = frozenset(self.config.volatile_fields)
        self.resolver.timestamp_fields = tuple(self.config.timestamp_fields)

        self.scheduler.interval = self.config.sync_interval
        self.scheduler.retry_delay = self.config.retry_delay
        self.scheduler.retry_delay_max = self.config.retry_delay_max
        self.scheduler.fail_fast_on_permanent = self.config.fail_fast_on_permanent
        self.scheduler.lock_ttl = self.config.pass_lock_ttl

        self.remote.timeout = self.config.request_timeout

        logger.info(f"Sync engine config updated: {sorted(changes)}")
        return self.get_config()
