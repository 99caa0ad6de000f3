"""Tests for the persistent key/value stores."""

import tempfile
from pathlib import Path

from django.test import SimpleTestCase, TestCase, override_settings

from offline_sync.models import StoredEntry
from offline_sync.stores import DatabaseStore, FileStore, MemoryStore
from offline_sync.sync import SyncConfig, SyncEngine
from offline_sync.sync.exceptions import StoreError, SyncError

from .fakes import FakeRemoteStore


class StoreContractMixin:
    """Behaviour every PersistentStore must share."""

    def make_store(self):
        raise NotImplementedError

    def test_put_get_delete(self):
        store = self.make_store()

        store.put("offline_op_a", '{"id": "a"}')
        self.assertEqual(store.get("offline_op_a"), '{"id": "a"}')

        store.put("offline_op_a", '{"id": "a", "v": 2}')
        self.assertEqual(store.get("offline_op_a"), '{"id": "a", "v": 2}')

        store.delete("offline_op_a")
        self.assertIsNone(store.get("offline_op_a"))

    def test_delete_missing_key(self):
        self.make_store().delete("offline_op_missing")

    def test_list_by_prefix(self):
        store = self.make_store()
        store.put("offline_op_b", "{}")
        store.put("offline_op_a", "{}")
        store.put("other_key", "{}")

        self.assertEqual(store.list_by_prefix("offline_op_"), ["offline_op_a", "offline_op_b"])

    def test_replace_only_rewrites_existing_keys(self):
        store = self.make_store()

        self.assertFalse(store.replace("offline_op_gone", "{}"))
        self.assertIsNone(store.get("offline_op_gone"))

        store.put("offline_op_a", "{}")
        self.assertTrue(store.replace("offline_op_a", '{"v": 2}'))
        self.assertEqual(store.get("offline_op_a"), '{"v": 2}')

    def test_lock_excludes_other_owners(self):
        store = self.make_store()

        self.assertTrue(store.acquire_lock("offline_lock_pass", "worker-a", 60))
        self.assertFalse(store.acquire_lock("offline_lock_pass", "worker-b", 60))
        # Renewal by the holder
        self.assertTrue(store.acquire_lock("offline_lock_pass", "worker-a", 60))

        store.release_lock("offline_lock_pass", "worker-b")
        self.assertFalse(store.acquire_lock("offline_lock_pass", "worker-b", 60))

        store.release_lock("offline_lock_pass", "worker-a")
        self.assertTrue(store.acquire_lock("offline_lock_pass", "worker-b", 60))

    def test_expired_lock_can_be_taken_over(self):
        store = self.make_store()

        self.assertTrue(store.acquire_lock("offline_lock_pass", "crashed", -1))
        self.assertTrue(store.acquire_lock("offline_lock_pass", "worker-b", 60))
        self.assertFalse(store.acquire_lock("offline_lock_pass", "crashed", 60))

    def test_lock_is_not_a_queue_entry(self):
        store = self.make_store()
        store.acquire_lock("offline_lock_pass", "worker-a", 60)

        self.assertEqual(store.list_by_prefix("offline_op_"), [])


class MemoryStoreTests(StoreContractMixin, SimpleTestCase):
    def make_store(self):
        return MemoryStore()


class FileStoreTests(StoreContractMixin, SimpleTestCase):
    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()

    def tearDown(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def make_store(self):
        return FileStore(Path(self.temp_dir) / "queue")

    def test_writes_leave_no_temp_files(self):
        store = self.make_store()
        store.put("offline_op_a", "x" * 10_000)

        self.assertEqual(
            sorted(p.name for p in store.directory.iterdir()), ["offline_op_a"]
        )

    def test_rejects_path_like_keys(self):
        store = self.make_store()

        for key in ("../escape", "a/b", ".hidden", ""):
            with self.subTest(key=key):
                with self.assertRaises(StoreError):
                    store.put(key, "{}")

    def test_store_errors_are_sync_errors(self):
        with self.assertRaises(SyncError):
            self.make_store().get("../escape")

    def test_defaults_to_setting(self):
        root = Path(self.temp_dir) / "from_settings"
        with override_settings(OFFLINE_SYNC_ROOT=root):
            store = FileStore()

        self.assertEqual(store.directory, root)
        self.assertTrue(root.is_dir())

    def test_engine_queue_survives_restart(self):
        remote = FakeRemoteStore()
        config = SyncConfig(request_timeout=None, sync_on_submit=False)

        first = SyncEngine(remote, self.make_store(), config=config)
        op_id = first.submit("todos", "insert", {"id": 1})
        first.shutdown()

        second = SyncEngine(remote, self.make_store(), config=config)
        try:
            self.assertEqual([op.id for op in second.pending_operations()], [op_id])
        finally:
            second.shutdown()


class DatabaseStoreTests(StoreContractMixin, TestCase):
    def make_store(self):
        return DatabaseStore()

    def test_entries_stored_as_rows(self):
        DatabaseStore().put("offline_op_a", '{"id": "a"}')

        entry = StoredEntry.objects.get(key="offline_op_a")
        self.assertEqual(entry.value, '{"id": "a"}')
        self.assertEqual(StoredEntry.objects.count(), 1)

    def test_engine_queue_survives_restart(self):
        remote = FakeRemoteStore()
        config = SyncConfig(request_timeout=None, sync_on_submit=False)

        first = SyncEngine(remote, DatabaseStore(), config=config)
        op_id = first.submit("todos", "update", {"id": 5, "title": "x"})
        first.shutdown()

        second = SyncEngine(remote, DatabaseStore(), config=config)
        try:
            self.assertEqual(second.queue.get(op_id).record_id, 5)
            self.assertEqual(second.force_sync().synced, 1)
            self.assertFalse(StoredEntry.objects.exists())
        finally:
            second.shutdown()
