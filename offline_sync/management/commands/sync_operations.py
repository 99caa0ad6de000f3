"""
Django management command to run a sync pass over the queued operations.
"""

import json

from django.core.management.base import BaseCommand

from offline_sync.conf import build_engine


class Command(BaseCommand):
    help = "Run one sync pass over the offline operation queue and print stats"

    def add_arguments(self, parser):
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output the pass report and stats as JSON",
        )

    def handle(self, *args, **options):
        engine = build_engine()
        try:
            report = engine.force_sync()
            stats = engine.get_stats()
        finally:
            engine.shutdown()

        if options["json"]:
            data = {
                "skipped": report.skipped,
                "reason": report.reason,
                "synced": report.synced,
                "retried": report.retried,
                "failed": report.failed,
                "conflicts": report.conflicts,
                "held": report.held,
                "deferred": report.deferred,
                "duration": report.duration,
                "stats": stats.to_dict(),
            }
            self.stdout.write(json.dumps(data, indent=2))
            return

        if report.skipped:
            self.stdout.write(self.style.WARNING(f"Sync pass skipped ({report.reason})"))
        else:
            style = self.style.SUCCESS if not report.failed else self.style.WARNING
            self.stdout.write(
                style(
                    f"Sync pass finished in {report.duration:.2f}s:\n"
                    f"  - Synced: {report.synced}\n"
                    f"  - Conflicts resolved: {report.conflicts}\n"
                    f"  - Held for resolution: {report.held}\n"
                    f"  - Retrying: {report.retried}\n"
                    f"  - Failed: {report.failed}\n"
                    f"  - Deferred: {report.deferred}"
                )
            )

        self.stdout.write(
            f"\nPending: {stats.pending_operations} "
            f"(blocked: {stats.blocked_operations}), "
            f"storage: {stats.storage_used:,} bytes"
        )
