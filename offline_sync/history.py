"""
Database-backed audit trail and conflict notifiers.

DatabasePassRecorder plugs into the scheduler to write a SyncPass row per
pass; the notifiers receive conflicts held for manual resolution.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from django.utils import timezone

from offline_sync.models import (
    ConflictRecord,
    PassEventType,
    PassStatus,
    SyncPass,
    SyncPassEvent,
)

if TYPE_CHECKING:
    from offline_sync.sync.operations import Operation
    from offline_sync.sync.scheduler import PassReport

logger = logging.getLogger(__name__)


class DatabasePassRecorder:
    """Writes SyncPass / SyncPassEvent rows for each sync pass."""

    def start_pass(self, forced: bool) -> SyncPass:
        return SyncPass.objects.create(forced=forced)

    def record(self, handle: SyncPass, operation: Operation, outcome: str, message: str) -> None:
        SyncPassEvent.objects.create(
            sync_pass=handle,
            event_type=PassEventType(outcome),
            operation_id=operation.id,
            table=operation.table,
            action=operation.action.value,
            attempt=operation.retry_count,
            message=message,
        )

    def finish_pass(self, handle: SyncPass, report: PassReport) -> None:
        handle.synced = report.synced
        handle.retried = report.retried
        handle.failed = report.failed
        handle.conflicts = report.conflicts
        handle.held = report.held
        handle.duration_seconds = report.duration
        handle.completed_at = timezone.now()

        if report.failed or report.retried:
            handle.status = PassStatus.PARTIAL if report.synced else PassStatus.FAILED
            errors = [str(r.error) for r in report.results if r.error is not None]
            handle.error_message = "\n".join(errors[:20])
        else:
            handle.status = PassStatus.COMPLETED

        handle.save()


class DatabaseConflictNotifier:
    """Stores held conflicts as ConflictRecord rows."""

    def notify(
        self,
        operation_id: str,
        conflicting_fields: list[str],
        local_payload: dict[str, Any],
        remote_snapshot: dict[str, Any],
    ) -> None:
        ConflictRecord.objects.update_or_create(
            operation_id=operation_id,
            defaults={
                "conflicting_fields": list(conflicting_fields),
                "local_payload": local_payload,
                "remote_snapshot": remote_snapshot,
                "resolved_at": None,
            },
        )
        logger.info(f"Recorded conflict for operation {operation_id}")

    def mark_resolved(self, operation_id: str) -> None:
        ConflictRecord.objects.filter(
            operation_id=operation_id, resolved_at__isnull=True
        ).update(resolved_at=timezone.now())


class LoggingConflictNotifier:
    """Reports held conflicts to the log only."""

    def notify(self, operation_id, conflicting_fields, local_payload, remote_snapshot):
        logger.warning(
            f"Manual conflict on operation {operation_id}: "
            f"fields={conflicting_fields}, local={local_payload}, remote={remote_snapshot}"
        )
