"""
Django management command to prune sync pass history.
"""

from django.core.management.base import BaseCommand

from offline_sync.gc import HistoryCollector


class Command(BaseCommand):
    help = "Delete old sync pass history and resolved conflict records"

    def add_arguments(self, parser):
        parser.add_argument(
            "--dry-run",
            action="store_true",
            help="Report what would be deleted without actually deleting",
        )
        parser.add_argument(
            "--keep-days",
            type=int,
            help="Retention in days (default: OFFLINE_SYNC HISTORY_KEEP_DAYS)",
        )

    def handle(self, *args, **options):
        if options["dry_run"]:
            self.stdout.write(self.style.WARNING("Running in dry-run mode"))

        collector = HistoryCollector(
            keep_days=options["keep_days"],
            dry_run=options["dry_run"],
        )
        result = collector.run()

        if options["dry_run"]:
            self.stdout.write(
                self.style.WARNING(
                    f"\n[DRY RUN] Would have deleted:\n"
                    f"  - {result.passes_deleted} sync passes\n"
                    f"  - {result.conflicts_deleted} resolved conflicts"
                )
            )
        else:
            self.stdout.write(
                self.style.SUCCESS(
                    f"\nSync history cleanup completed:\n"
                    f"  - Deleted {result.passes_deleted} sync passes\n"
                    f"  - Deleted {result.conflicts_deleted} resolved conflicts"
                )
            )
