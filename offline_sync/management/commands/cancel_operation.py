"""
Django management command to cancel a queued operation.
"""

from datetime import timedelta

from django.core.management.base import BaseCommand, CommandError

from offline_sync.stores import DatabaseStore
from offline_sync.sync import OperationQueue, SyncConfig


class Command(BaseCommand):
    help = "Remove a queued offline operation before it syncs"

    def add_arguments(self, parser):
        parser.add_argument("operation_id", help="ID of the operation to cancel")

    def handle(self, *args, **options):
        operation_id = options["operation_id"]

        config = SyncConfig.from_settings()
        queue = OperationQueue(
            DatabaseStore(), retention=timedelta(days=config.retention_days)
        )
        queue.load()

        operation = queue.remove(operation_id)
        if operation is None:
            raise CommandError(f"Operation {operation_id} is not queued")

        self.stdout.write(
            self.style.SUCCESS(
                f"Cancelled {operation.action.value} on {operation.table} ({operation_id})"
            )
        )
