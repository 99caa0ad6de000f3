"""
Celery tasks for offline sync.

Lets a beat schedule or a worker drive sync passes and history cleanup
instead of the in-process timer thread.
"""

import logging

from celery import shared_task

logger = logging.getLogger(__name__)


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=600,
    max_retries=3,
)
def run_sync_pass_task(self, force: bool = True):
    """
    Run one sync pass over the database-backed queue.

    Args:
        force: Run even if the connectivity probe reports offline (default)
    """
    from offline_sync.conf import build_engine

    engine = build_engine()
    try:
        if force:
            report = engine.force_sync()
        else:
            engine.monitor.check()
            report = engine.scheduler.run_once()
        stats = engine.get_stats()
    finally:
        engine.shutdown()

    if report.skipped:
        logger.info(f"Sync pass skipped: {report.reason}")
        return {"status": "skipped", "reason": report.reason}

    return {
        "status": "completed",
        "synced": report.synced,
        "retried": report.retried,
        "failed": report.failed,
        "conflicts": report.conflicts,
        "held": report.held,
        "pending": stats.pending_operations,
    }


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    max_retries=2,
)
def purge_sync_history_task(self, keep_days: int | None = None):
    """
    Delete old sync passes and resolved conflicts.

    Args:
        keep_days: Override OFFLINE_SYNC HISTORY_KEEP_DAYS
    """
    from offline_sync.gc import HistoryCollector

    logger.info(f"Starting sync history cleanup (keep_days={keep_days})")
    result = HistoryCollector(keep_days=keep_days).run()

    return {
        "status": "completed",
        "passes_deleted": result.passes_deleted,
        "conflicts_deleted": result.conflicts_deleted,
    }
