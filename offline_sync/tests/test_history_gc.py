"""Tests for the pass audit trail, conflict records and history cleanup."""

from datetime import timedelta

from django.test import TestCase, override_settings
from django.utils import timezone

from offline_sync.gc import HistoryCollector
from offline_sync.history import (
    DatabaseConflictNotifier,
    DatabasePassRecorder,
    LoggingConflictNotifier,
)
from offline_sync.models import (
    ConflictRecord,
    PassEventType,
    PassStatus,
    SyncPass,
    SyncPassEvent,
)
from offline_sync.stores import MemoryStore
from offline_sync.sync import ConflictStrategy, SyncConfig, SyncEngine
from offline_sync.sync.exceptions import TransientRemoteError

from .fakes import FakeRemoteStore


class HistoryTestCase(TestCase):
    def setUp(self):
        self.remote = FakeRemoteStore()
        self.notifier = DatabaseConflictNotifier()
        self.engines = []

    def tearDown(self):
        for engine in self.engines:
            engine.shutdown()

    def make_engine(self, **config) -> SyncEngine:
        config.setdefault("request_timeout", None)
        config.setdefault("sync_on_submit", False)
        engine = SyncEngine(
            self.remote,
            MemoryStore(),
            notifier=self.notifier,
            config=SyncConfig(**config),
            recorder=DatabasePassRecorder(),
        )
        self.engines.append(engine)
        return engine


class PassRecorderTests(HistoryTestCase):
    def test_successful_pass_recorded(self):
        engine = self.make_engine()
        op_id = engine.submit("todos", "insert", {"id": 1})

        engine.force_sync()

        sync_pass = SyncPass.objects.get()
        self.assertEqual(sync_pass.status, PassStatus.COMPLETED)
        self.assertTrue(sync_pass.forced)
        self.assertEqual(sync_pass.synced, 1)
        self.assertIsNotNone(sync_pass.completed_at)

        event = sync_pass.events.get()
        self.assertEqual(event.event_type, PassEventType.SYNCED)
        self.assertEqual(event.operation_id, op_id)
        self.assertEqual(event.table, "todos")
        self.assertEqual(event.action, "insert")

    def test_failed_pass_recorded(self):
        self.remote.fail_with["insert"] = TransientRemoteError("network down")
        engine = self.make_engine()
        engine.submit("todos", "insert", {"id": 1})

        engine.force_sync()

        sync_pass = SyncPass.objects.get()
        self.assertEqual(sync_pass.status, PassStatus.FAILED)
        self.assertEqual(sync_pass.retried, 1)
        self.assertIn("network down", sync_pass.error_message)

        event = SyncPassEvent.objects.get()
        self.assertEqual(event.event_type, PassEventType.RETRY)
        self.assertEqual(event.attempt, 1)

    def test_partial_pass_recorded(self):
        self.remote.fail_with["insert"] = [None, TransientRemoteError("flaky")]
        engine = self.make_engine()
        engine.submit("todos", "insert", {"id": 1})
        engine.submit("todos", "insert", {"id": 2})

        engine.force_sync()

        self.assertEqual(SyncPass.objects.get().status, PassStatus.PARTIAL)

    def test_skipped_pass_not_recorded(self):
        engine = self.make_engine()

        engine.force_sync()

        self.assertFalse(SyncPass.objects.exists())


class ConflictNotifierTests(HistoryTestCase):
    def test_held_conflict_stored_and_resolved(self):
        self.remote.seed("todos", {"id": 1, "title": "theirs"})
        engine = self.make_engine(conflict_strategy=ConflictStrategy.MANUAL)
        op_id = engine.submit(
            "todos", "update", {"id": 1, "title": "mine"}, baseline={"id": 1, "title": "base"}
        )

        engine.force_sync()

        record = ConflictRecord.objects.get(operation_id=op_id)
        self.assertFalse(record.is_resolved)
        self.assertEqual(record.conflicting_fields, ["title"])
        self.assertEqual(record.local_payload["title"], "mine")
        self.assertEqual(record.remote_snapshot["title"], "theirs")
        self.assertEqual(
            SyncPassEvent.objects.get(operation_id=op_id).event_type, PassEventType.HELD
        )

        engine.resolve_conflict(op_id)

        record.refresh_from_db()
        self.assertTrue(record.is_resolved)

    def test_renotify_reopens_record(self):
        self.notifier.notify("op-1", ["a"], {"a": 1}, {"a": 2})
        self.notifier.mark_resolved("op-1")
        self.notifier.notify("op-1", ["a", "b"], {"a": 1}, {"a": 3})

        record = ConflictRecord.objects.get()
        self.assertFalse(record.is_resolved)
        self.assertEqual(record.conflicting_fields, ["a", "b"])

    def test_logging_notifier(self):
        with self.assertLogs("offline_sync.history", level="WARNING") as logs:
            LoggingConflictNotifier().notify("op-1", ["title"], {"title": "a"}, {"title": "b"})

        self.assertIn("op-1", logs.output[0])


class HistoryCollectorTests(TestCase):
    def setUp(self):
        now = timezone.now()
        self.old_pass = SyncPass.objects.create(status=PassStatus.COMPLETED)
        self.recent_pass = SyncPass.objects.create(status=PassStatus.COMPLETED)
        self.stuck_pass = SyncPass.objects.create(status=PassStatus.RUNNING)
        SyncPass.objects.filter(pk__in=[self.old_pass.pk, self.stuck_pass.pk]).update(
            started_at=now - timedelta(days=40)
        )
        SyncPassEvent.objects.create(
            sync_pass=self.old_pass, event_type=PassEventType.SYNCED, operation_id="op-1"
        )

        self.old_resolved = ConflictRecord.objects.create(
            operation_id="op-old", resolved_at=now - timedelta(days=40)
        )
        self.recent_resolved = ConflictRecord.objects.create(
            operation_id="op-recent", resolved_at=now - timedelta(days=1)
        )
        self.open_conflict = ConflictRecord.objects.create(operation_id="op-open")
        ConflictRecord.objects.filter(pk=self.open_conflict.pk).update(
            created_at=now - timedelta(days=90)
        )

    def test_purges_old_history(self):
        result = HistoryCollector(keep_days=30).run()

        self.assertEqual(result.passes_deleted, 1)
        self.assertEqual(result.conflicts_deleted, 1)
        self.assertEqual(
            set(SyncPass.objects.values_list("pk", flat=True)),
            {self.recent_pass.pk, self.stuck_pass.pk},
        )
        self.assertFalse(SyncPassEvent.objects.exists())
        self.assertEqual(
            set(ConflictRecord.objects.values_list("operation_id", flat=True)),
            {"op-recent", "op-open"},
        )

    def test_dry_run_deletes_nothing(self):
        result = HistoryCollector(keep_days=30, dry_run=True).run()

        self.assertEqual(result.passes_deleted, 1)
        self.assertEqual(result.conflicts_deleted, 1)
        self.assertEqual(SyncPass.objects.count(), 3)
        self.assertEqual(ConflictRecord.objects.count(), 3)

    @override_settings(OFFLINE_SYNC={"HISTORY_KEEP_DAYS": 60})
    def test_keep_days_from_settings(self):
        collector = HistoryCollector()

        self.assertEqual(collector.keep_days, 60)
        self.assertEqual(collector.run().passes_deleted, 0)
