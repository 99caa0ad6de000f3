"""Tests for the persistent operation queue."""

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from uuid import UUID

from django.test import SimpleTestCase

from offline_sync.stores import MemoryStore
from offline_sync.sync.exceptions import CapacityExceeded
from offline_sync.sync.operations import Action, Operation, OperationStatus, Priority
from offline_sync.sync.queue import KEY_PREFIX, OperationQueue

BASE_TIME = datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc)


def make_op(
    op_id: str,
    priority: Priority = Priority.NORMAL,
    offset: int = 0,
    dependencies: tuple = (),
    created_at: datetime = None,
) -> Operation:
    return Operation(
        id=op_id,
        table="todos",
        action=Action.INSERT,
        payload={"title": op_id},
        created_at=created_at or BASE_TIME + timedelta(seconds=offset),
        priority=priority,
        dependencies=frozenset(dependencies),
    )


class OperationQueueTestCase(SimpleTestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.queue = OperationQueue(self.store, max_size=10)
        self.now = BASE_TIME + timedelta(hours=1)


class PersistenceTests(OperationQueueTestCase):
    def test_add_writes_through_to_store(self):
        self.queue.add(make_op("a"), now=self.now)

        self.assertIn("a", self.queue)
        self.assertIsNotNone(self.store.get(f"{KEY_PREFIX}a"))

    def test_load_rebuilds_queue_from_store(self):
        self.queue.add(make_op("a", priority=Priority.HIGH), now=self.now)
        self.queue.add(make_op("b", dependencies=("a",)), now=self.now)

        fresh = OperationQueue(self.store)
        loaded = fresh.load(now=self.now)

        self.assertEqual(loaded, 2)
        self.assertEqual(fresh.get("a").priority, Priority.HIGH)
        self.assertEqual(fresh.get("b").dependencies, frozenset({"a"}))
        self.assertEqual(fresh.get("a").created_at, BASE_TIME)

    def test_load_discards_unreadable_entries(self):
        self.queue.add(make_op("a"), now=self.now)
        self.store.put(f"{KEY_PREFIX}broken", "{not json")
        self.store.put(f"{KEY_PREFIX}partial", '{"id": "partial"}')

        fresh = OperationQueue(self.store)
        loaded = fresh.load(now=self.now)

        self.assertEqual(loaded, 1)
        self.assertIsNone(self.store.get(f"{KEY_PREFIX}broken"))
        self.assertIsNone(self.store.get(f"{KEY_PREFIX}partial"))

    def test_load_discards_expired_entries(self):
        self.queue.add(make_op("old"), now=self.now)
        self.queue.add(make_op("new", created_at=BASE_TIME + timedelta(days=6)), now=self.now)

        fresh = OperationQueue(self.store, retention=timedelta(days=7))
        fresh.load(now=BASE_TIME + timedelta(days=8))

        self.assertNotIn("old", fresh)
        self.assertIn("new", fresh)
        self.assertIsNone(self.store.get(f"{KEY_PREFIX}old"))

    def test_load_ignores_keys_without_prefix(self):
        self.store.put("something_else", "{}")
        self.assertEqual(self.queue.load(now=self.now), 0)
        self.assertEqual(self.store.get("something_else"), "{}")

    def test_remove_deletes_persisted_copy(self):
        self.queue.add(make_op("a"), now=self.now)

        removed = self.queue.remove("a")

        self.assertEqual(removed.id, "a")
        self.assertIsNone(self.store.get(f"{KEY_PREFIX}a"))
        self.assertIsNone(self.queue.remove("a"))

    def test_save_persists_counters(self):
        op = make_op("a")
        self.queue.add(op, now=self.now)
        op.retry_count = 2
        op.last_error = "boom"

        self.assertTrue(self.queue.save(op))

        fresh = OperationQueue(self.store)
        fresh.load(now=self.now)
        self.assertEqual(fresh.get("a").retry_count, 2)
        self.assertEqual(fresh.get("a").last_error, "boom")

    def test_non_json_values_reload_with_their_types(self):
        values = {
            "id": 1,
            "due": date(2024, 1, 2),
            "seen_at": datetime(2024, 1, 2, 9, 30, 15, 123456, tzinfo=timezone.utc),
            "starts": time(9, 30),
            "window": timedelta(hours=2, seconds=5),
            "cost": Decimal("9.50"),
            "owner": UUID("12345678-1234-5678-1234-567812345678"),
            "tags": ["a", {"nested": date(2024, 2, 1)}],
        }
        op = make_op("a")
        op.payload = dict(values)
        op.baseline = dict(values)
        self.queue.add(op, now=self.now)

        fresh = OperationQueue(self.store)
        fresh.load(now=self.now)

        self.assertEqual(fresh.get("a").baseline, values)
        self.assertEqual(fresh.get("a").payload, values)
        self.assertIsInstance(fresh.get("a").baseline["cost"], Decimal)

    def test_plain_dicts_resembling_tags_are_left_alone(self):
        op = make_op("a")
        op.payload = {"meta": {"__type__": "date"}, "other": {"__type__": "nope", "value": 1}}
        self.queue.add(op, now=self.now)

        fresh = OperationQueue(self.store)
        fresh.load(now=self.now)

        self.assertEqual(fresh.get("a").payload, op.payload)

    def test_remove_without_load_deletes_persisted_entry(self):
        self.queue.add(make_op("a"), now=self.now)

        removed = OperationQueue(self.store).remove("a")

        self.assertEqual(removed.id, "a")
        self.assertIsNone(self.store.get(f"{KEY_PREFIX}a"))

    def test_save_does_not_resurrect_entry_deleted_elsewhere(self):
        op = make_op("a")
        self.queue.add(op, now=self.now)
        self.store.delete(f"{KEY_PREFIX}a")
        op.retry_count = 1

        self.assertFalse(self.queue.save(op))
        self.assertIsNone(self.store.get(f"{KEY_PREFIX}a"))
        self.assertNotIn("a", self.queue)

    def test_refresh_follows_store(self):
        self.queue.add(make_op("a"), now=self.now)
        self.queue.add(make_op("b"), now=self.now)
        kept = self.queue.get("a")
        other = OperationQueue(self.store)
        other.load(now=self.now)
        other.remove("b")
        other.add(make_op("c"), now=self.now)

        self.assertEqual(self.queue.refresh(), 2)

        self.assertEqual(sorted(op.id for op in self.queue.all()), ["a", "c"])
        self.assertIs(self.queue.get("a"), kept)

    def test_save_refuses_removed_operation(self):
        op = make_op("a")
        self.queue.add(op, now=self.now)
        self.queue.remove("a")

        self.assertFalse(self.queue.save(op))
        self.assertIsNone(self.store.get(f"{KEY_PREFIX}a"))

    def test_clear(self):
        for name in ("a", "b", "c"):
            self.queue.add(make_op(name), now=self.now)

        self.assertEqual(self.queue.clear(), 3)
        self.assertEqual(len(self.queue), 0)
        self.assertEqual(self.store.list_by_prefix(KEY_PREFIX), [])

    def test_storage_used_counts_persisted_bytes(self):
        self.assertEqual(self.queue.storage_used(), 0)
        op = make_op("a")
        self.queue.add(op, now=self.now)

        self.assertEqual(self.queue.storage_used(), len(op.to_json().encode("utf-8")))


class CapacityTests(OperationQueueTestCase):
    def test_full_queue_rejects_new_operations(self):
        queue = OperationQueue(self.store, max_size=2)
        queue.add(make_op("a"), now=self.now)
        queue.add(make_op("b"), now=self.now)

        with self.assertRaises(CapacityExceeded):
            queue.add(make_op("c"), now=self.now)

        self.assertEqual(len(queue), 2)
        self.assertIsNone(self.store.get(f"{KEY_PREFIX}c"))

    def test_full_queue_purges_expired_before_rejecting(self):
        queue = OperationQueue(self.store, max_size=2, retention=timedelta(days=7))
        queue.add(make_op("old"), now=self.now)
        queue.add(make_op("recent", created_at=BASE_TIME + timedelta(days=5)), now=self.now)

        later = BASE_TIME + timedelta(days=8)
        queue.add(make_op("c", created_at=later), now=later)

        self.assertNotIn("old", queue)
        self.assertIn("recent", queue)
        self.assertIn("c", queue)


class OrderingTests(OperationQueueTestCase):
    def test_orders_by_priority_then_creation_time(self):
        self.queue.add(make_op("low", Priority.LOW, offset=0), now=self.now)
        self.queue.add(make_op("normal-late", Priority.NORMAL, offset=20), now=self.now)
        self.queue.add(make_op("critical", Priority.CRITICAL, offset=30), now=self.now)
        self.queue.add(make_op("normal-early", Priority.NORMAL, offset=10), now=self.now)

        order = [op.id for op in self.queue.sorted_for_sync()]

        self.assertEqual(order, ["critical", "normal-early", "normal-late", "low"])

    def test_creation_order_only_when_not_prioritized(self):
        queue = OperationQueue(self.store, prioritize=False)
        queue.add(make_op("low", Priority.LOW, offset=0), now=self.now)
        queue.add(make_op("critical", Priority.CRITICAL, offset=30), now=self.now)

        self.assertEqual([op.id for op in queue.sorted_for_sync()], ["low", "critical"])

    def test_excludes_operations_with_queued_dependencies(self):
        self.queue.add(make_op("parent", Priority.LOW, offset=0), now=self.now)
        self.queue.add(
            make_op("child", Priority.CRITICAL, offset=1, dependencies=("parent",)),
            now=self.now,
        )

        self.assertEqual([op.id for op in self.queue.sorted_for_sync()], ["parent"])

        self.queue.remove("parent")
        self.assertEqual([op.id for op in self.queue.sorted_for_sync()], ["child"])

    def test_dependency_on_unknown_id_is_satisfied(self):
        op = make_op("child", dependencies=("long-gone",))
        self.queue.add(op, now=self.now)

        self.assertTrue(self.queue.dependencies_satisfied(op))
        self.assertEqual([o.id for o in self.queue.sorted_for_sync()], ["child"])

    def test_excludes_operations_held_on_conflict(self):
        held = make_op("held")
        held.status = OperationStatus.BLOCKED_ON_CONFLICT
        self.queue.add(held, now=self.now)
        self.queue.add(make_op("free", offset=1), now=self.now)

        self.assertEqual([op.id for op in self.queue.sorted_for_sync()], ["free"])

    def test_sorted_for_sync_is_a_snapshot(self):
        self.queue.add(make_op("a"), now=self.now)
        snapshot = self.queue.sorted_for_sync()
        self.queue.remove("a")

        self.assertEqual([op.id for op in snapshot], ["a"])
