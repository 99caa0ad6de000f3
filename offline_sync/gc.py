"""
Garbage collection for sync history.

Removes old SyncPass rows (events cascade) and resolved ConflictRecords
once they fall outside the retention window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta

from django.utils import timezone

from offline_sync.models import ConflictRecord, PassStatus, SyncPass
from offline_sync.sync.config import SyncConfig

logger = logging.getLogger(__name__)


@dataclass
class GCResult:
    """Result of a history cleanup run."""

    passes_deleted: int = 0
    conflicts_deleted: int = 0


class HistoryCollector:
    """
    Prunes pass history and resolved conflicts.

    Unresolved conflicts are never deleted; the operations they describe
    are still waiting in the queue.
    """

    def __init__(self, keep_days: int | None = None, dry_run: bool = False):
        """
        Args:
            keep_days: Retention in days (default: OFFLINE_SYNC HISTORY_KEEP_DAYS)
            dry_run: If True, report what would be deleted without deleting
        """
        if keep_days is None:
            keep_days = SyncConfig.from_settings().history_keep_days
        self.keep_days = keep_days
        self.dry_run = dry_run

    def run(self) -> GCResult:
        cutoff = timezone.now() - timedelta(days=self.keep_days)
        result = GCResult()

        logger.info(
            f"Starting sync history cleanup (dry_run={self.dry_run}, keep_days={self.keep_days})"
        )

        passes = SyncPass.objects.filter(started_at__lt=cutoff).exclude(
            status=PassStatus.RUNNING
        )
        conflicts = ConflictRecord.objects.filter(
            resolved_at__isnull=False, resolved_at__lt=cutoff
        )

        if self.dry_run:
            result.passes_deleted = passes.count()
            result.conflicts_deleted = conflicts.count()
            logger.info(
                f"[DRY RUN] Would delete {result.passes_deleted} passes "
                f"and {result.conflicts_deleted} resolved conflicts"
            )
            return result

        result.passes_deleted = passes.count()
        passes.delete()
        result.conflicts_deleted, _ = conflicts.delete()

        logger.info(
            f"Sync history cleanup complete: {result.passes_deleted} passes, "
            f"{result.conflicts_deleted} resolved conflicts deleted"
        )
        return result
