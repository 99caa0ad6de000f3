"""
Sync pass scheduling.

Runs passes on a timer thread, on demand, and when connectivity returns.
At most one pass is ever in flight: a thread lock covers this process and
a leased lock in the persistent store covers every process sharing it.
Within a pass operations are sent one at a time in queue order.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from offline_sync.sync.connectivity import ConnectivityMonitor
from offline_sync.sync.exceptions import ConflictUnresolved, PermanentRemoteError
from offline_sync.sync.operations import (
    Operation,
    OperationStatus,
    SyncResult,
    utcnow,
)
from offline_sync.sync.queue import OperationQueue

logger = logging.getLogger(__name__)

PASS_LOCK = "offline_lock_pass"


@dataclass
class SyncStats:
    """Aggregate counters exposed by ``SyncEngine.get_stats``."""

    is_online: bool = False
    pending_operations: int = 0
    failed_operations: int = 0
    last_sync_time: datetime | None = None
    total_synced: int = 0
    total_conflicts: int = 0
    average_sync_time: float = 0.0  # seconds
    storage_used: int = 0
    blocked_operations: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["last_sync_time"] = (
            self.last_sync_time.isoformat() if self.last_sync_time else None
        )
        return data


@dataclass
class PassReport:
    """What a single sync pass did."""

    skipped: bool = False
    reason: str = ""
    started_at: datetime | None = None
    duration: float = 0.0
    synced: int = 0
    retried: int = 0
    failed: int = 0
    conflicts: int = 0
    held: int = 0
    deferred: int = 0
    cancelled: int = 0
    results: list[SyncResult] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.results)


class PassRecorder(Protocol):
    def start_pass(self, forced: bool) -> Any: ...

    def record(self, handle: Any, operation: Operation, outcome: str, message: str) -> None: ...

    def finish_pass(self, handle: Any, report: PassReport) -> None: ...


class SyncScheduler:
    """
    Drains the operation queue against the remote store.

    ``process`` is the per-operation sync procedure; it returns a
    SyncResult and is expected not to raise.
    """

    def __init__(
        self,
        queue: OperationQueue,
        process: Callable[[Operation], SyncResult],
        monitor: ConnectivityMonitor,
        stats: SyncStats,
        interval: float = 30.0,
        retry_delay: float = 0.0,
        retry_delay_max: float = 600.0,
        fail_fast_on_permanent: bool = False,
        on_pass_complete: Callable[[PassReport], None] | None = None,
        recorder: PassRecorder | None = None,
        lock_ttl: float = 600.0,
    ):
        self.queue = queue
        self.process = process
        self.monitor = monitor
        self.stats = stats
        self.interval = interval
        self.retry_delay = retry_delay
        self.retry_delay_max = retry_delay_max
        self.fail_fast_on_permanent = fail_fast_on_permanent
        self.on_pass_complete = on_pass_complete
        self.recorder = recorder
        self.lock_ttl = lock_ttl
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

        self.stats_lock = threading.Lock()
        self._pass_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def in_flight(self) -> bool:
        return self._pass_lock.locked()

    def start(self) -> None:
        """Start the background timer thread."""
        if self.is_running:
            return

        logger.info(f"Starting sync scheduler (interval={self.interval}s)")
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="offline-sync-scheduler",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        if not self.is_running:
            return

        logger.info("Stopping sync scheduler")
        self._stop.set()
        self._wake.set()
        self._thread.join(timeout=timeout)
        self._thread = None

    def trigger(self) -> None:
        """Ask the timer thread for an immediate pass. No-op when stopped."""
        if self.is_running:
            self._wake.set()

    def force_sync(self) -> PassReport:
        """Run a pass now in the calling thread, even while offline."""
        return self.run_once(force=True)

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(self.interval)
            if self._stop.is_set():
                break

            self.monitor.check()
            self._wake.clear()

            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Scheduled sync pass crashed: {e}", exc_info=True)

    def run_once(self, force: bool = False) -> PassReport:
        """
        Run one pass unless one is already in flight.

        A pass is skipped when another is running (in this process, or in
        any process sharing the store), when the queue is empty, or, unless
        forced, while offline.
        """
        if not self._pass_lock.acquire(blocking=False):
            logger.debug("Sync pass already in flight, skipping")
            return PassReport(skipped=True, reason="in_flight")

        try:
            if not force and not self.monitor.is_online():
                return PassReport(skipped=True, reason="offline")

            store = self.queue.store
            if not store.acquire_lock(PASS_LOCK, self.owner, self.lock_ttl):
                logger.info("Sync pass already running in another process, skipping")
                return PassReport(skipped=True, reason="in_flight")

            try:
                if self.queue.refresh() == 0:
                    return PassReport(skipped=True, reason="empty")
                return self._run_pass(force)
            finally:
                store.release_lock(PASS_LOCK, self.owner)
        finally:
            self._pass_lock.release()

    def _renew_lease(self) -> bool:
        if self.queue.store.acquire_lock(PASS_LOCK, self.owner, self.lock_ttl):
            return True
        logger.warning("Lost the sync pass lock to another process, ending pass early")
        return False

    def _run_pass(self, forced: bool) -> PassReport:
        report = PassReport(started_at=utcnow())
        handle = self._record_start(forced)
        started = time.monotonic()

        logger.info(f"Starting sync pass ({len(self.queue)} queued)")

        attempted: set[str] = set()
        lease_held = True
        while lease_held:
            # Dependents of operations synced earlier in this pass become
            # eligible here; nothing is attempted twice in one pass.
            batch = [op for op in self.queue.sorted_for_sync() if op.id not in attempted]
            if not batch:
                break

            for operation in batch:
                attempted.add(operation.id)

                if self.queue.was_removed(operation.id):
                    continue

                if operation.next_attempt_at and operation.next_attempt_at > utcnow():
                    report.deferred += 1
                    continue

                try:
                    result = self.process(operation)
                except Exception as e:
                    logger.error(
                        f"Unexpected error syncing {operation.id}: {e}", exc_info=True
                    )
                    result = SyncResult(success=False, operation_id=operation.id, error=e)

                report.results.append(result)
                outcome = self._apply_result(operation, result, report)
                self._record(handle, operation, outcome, result)

                if not self._renew_lease():
                    lease_held = False
                    break

        report.duration = time.monotonic() - started
        with self.stats_lock:
            self.stats.last_sync_time = utcnow()
            if self.stats.average_sync_time:
                self.stats.average_sync_time = (
                    self.stats.average_sync_time + report.duration
                ) / 2
            else:
                self.stats.average_sync_time = report.duration

        logger.info(
            f"Sync pass finished in {report.duration:.3f}s: "
            f"{report.synced} synced, {report.retried} retrying, "
            f"{report.failed} failed, {report.held} held, "
            f"{report.deferred} deferred"
        )

        self._record_finish(handle, report)
        if self.on_pass_complete is not None:
            self.on_pass_complete(report)
        return report

    def _apply_result(self, operation: Operation, result: SyncResult, report: PassReport) -> str:
        """Fold one result into the queue and stats. Returns the outcome name."""
        with self.queue.lock:
            # Cancelled while the remote call was in flight, here or elsewhere
            if self.queue.was_removed(operation.id):
                logger.info(f"Operation {operation.id} was cancelled mid-flight, dropping result")
                report.cancelled += 1
                return "cancelled"

            if result.success:
                self.queue.remove(operation.id)
                report.synced += 1
                with self.stats_lock:
                    self.stats.total_synced += 1
                    if result.conflict_resolution is not None:
                        self.stats.total_conflicts += 1
                if result.conflict_resolution is not None:
                    report.conflicts += 1
                    return "conflict"
                return "synced"

            if isinstance(result.error, ConflictUnresolved):
                operation.status = OperationStatus.BLOCKED_ON_CONFLICT
                operation.conflict_snapshot = result.remote_snapshot
                if not self.queue.save(operation):
                    report.cancelled += 1
                    return "cancelled"
                report.held += 1
                with self.stats_lock:
                    self.stats.total_conflicts += 1
                return "held"

            operation.retry_count += 1
            operation.last_error = str(result.error or "unknown error")

            permanent = self.fail_fast_on_permanent and isinstance(
                result.error, PermanentRemoteError
            )
            if permanent or operation.retry_count >= operation.max_retries:
                self.queue.remove(operation.id)
                report.failed += 1
                with self.stats_lock:
                    self.stats.failed_operations += 1
                logger.error(
                    f"Operation {operation.id} failed after {operation.retry_count} "
                    f"attempt(s): {operation.last_error}"
                )
                return "failed"

            if self.retry_delay:
                delay = min(
                    self.retry_delay * 2 ** (operation.retry_count - 1),
                    self.retry_delay_max,
                )
                operation.next_attempt_at = utcnow() + timedelta(seconds=delay)

            if not self.queue.save(operation):
                report.cancelled += 1
                return "cancelled"
            report.retried += 1
            logger.warning(
                f"Operation {operation.id} failed "
                f"(attempt {operation.retry_count}/{operation.max_retries}): "
                f"{operation.last_error}"
            )
            return "retry"

    def _record_start(self, forced: bool) -> Any:
        if self.recorder is None:
            return None
        try:
            return self.recorder.start_pass(forced)
        except Exception as e:
            logger.warning(f"Failed to record pass start: {e}")
            return None

    def _record(self, handle: Any, operation: Operation, outcome: str, result: SyncResult) -> None:
        if self.recorder is None or handle is None:
            return
        try:
            self.recorder.record(handle, operation, outcome, str(result.error or ""))
        except Exception as e:
            logger.warning(f"Failed to record outcome for {operation.id}: {e}")

    def _record_finish(self, handle: Any, report: PassReport) -> None:
        if self.recorder is None or handle is None:
            return
        try:
            self.recorder.finish_pass(handle, report)
        except Exception as e:
            logger.warning(f"Failed to record pass finish: {e}")
