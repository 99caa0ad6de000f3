"""
Django management command to list queued offline operations.
"""

import json
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.core.serializers.json import DjangoJSONEncoder

from offline_sync.stores import DatabaseStore
from offline_sync.sync import OperationQueue, SyncConfig
from offline_sync.sync.operations import Operation


class Command(BaseCommand):
    help = "List queued offline operations in sync order"

    def add_arguments(self, parser):
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output as JSON",
        )

    def handle(self, *args, **options):
        config = SyncConfig.from_settings()
        queue = OperationQueue(
            DatabaseStore(),
            max_size=config.max_operations,
            retention=timedelta(days=config.retention_days),
            prioritize=config.prioritize_operations,
        )
        queue.load()
        operations = sorted(queue.all(), key=queue.sort_key)

        if options["json"]:
            data = [op.to_dict() for op in operations]
            self.stdout.write(json.dumps(data, indent=2, cls=DjangoJSONEncoder))
            return

        if not operations:
            self.stdout.write(self.style.WARNING("No queued operations."))
            return

        self._output_table(operations)

    def _output_table(self, operations: list[Operation]):
        """Output operations as formatted table."""
        self.stdout.write("\n" + "=" * 100)
        self.stdout.write(
            f"{'ID':<38} {'Table':<16} {'Action':<8} {'Priority':<9} "
            f"{'Retries':<8} {'Created':<16} {'Status'}"
        )
        self.stdout.write("=" * 100)

        for op in operations:
            if op.is_blocked_on_conflict:
                status_display = self.style.ERROR("conflict")
            elif op.retry_count:
                status_display = self.style.WARNING("retrying")
            else:
                status_display = self.style.SUCCESS("pending")

            self.stdout.write(
                f"{op.id:<38} {op.table[:16]:<16} {op.action.value:<8} "
                f"{op.priority.name:<9} {f'{op.retry_count}/{op.max_retries}':<8} "
                f"{op.created_at.strftime('%Y-%m-%d %H:%M'):<16} {status_display}"
            )

        self.stdout.write("=" * 100)
        self.stdout.write(f"Total: {len(operations)} operation(s)\n")
