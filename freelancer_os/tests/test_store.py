import os
import tempfile
import unittest

from freelancer_os.changes import InProcessChangeFeed
from freelancer_os.errors import StoreError
from freelancer_os.store import (
    InMemoryDocumentStore,
    NodeRow,
    SqlDocumentStore,
    flatten,
    generate_push_id,
    unflatten,
)


class TreeHelpersTests(unittest.TestCase):
    def test_flatten_and_unflatten_lists(self):
        value = {"name": "A", "items": [{"rate": 1}, {"rate": 2}], "empty": {}}
        leaves = flatten(value, "inv/1")
        self.assertEqual(
            leaves,
            {"inv/1/name": "A", "inv/1/items/0/rate": 1, "inv/1/items/1/rate": 2},
        )
        self.assertEqual(
            unflatten(leaves, "inv/1"),
            {"items": [{"rate": 1}, {"rate": 2}], "name": "A"},
        )

    def test_invalid_key_rejected(self):
        with self.assertRaises(ValueError):
            flatten({"a.b": 1}, "x")

    def test_push_ids_sort_in_creation_order(self):
        ids = [generate_push_id() for _ in range(200)]
        self.assertEqual(ids, sorted(ids))
        self.assertEqual(len(set(ids)), 200)
        self.assertTrue(all(len(i) == 20 for i in ids))


class StoreContract:
    """Behaviour every document store backend must share."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_set_get_and_remove(self):
        self.store.set("users/u1/clients/c1", {"name": "Acme", "budget": 10})
        self.assertEqual(
            self.store.get("users/u1/clients/c1"), {"budget": 10, "name": "Acme"}
        )
        self.assertEqual(self.store.get("users/u1/clients/c1/name"), "Acme")
        self.store.remove("users/u1/clients/c1")
        self.assertIsNone(self.store.get("users/u1/clients/c1"))
        self.assertIsNone(self.store.get("users/u1"))

    def test_remove_absent_path_is_not_an_error(self):
        self.store.remove("users/u1/clients/missing")
        self.assertIsNone(self.store.get("users/u1/clients/missing"))

    def test_set_replaces_subtree(self):
        self.store.set("a", {"x": 1, "y": 2})
        self.store.set("a", {"z": 3})
        self.assertEqual(self.store.get("a"), {"z": 3})

    def test_update_merges_children(self):
        self.store.set("a", {"x": 1, "y": {"deep": True}})
        self.store.update("a", {"y": 5, "w": "new", "x": None})
        self.assertEqual(self.store.get("a"), {"w": "new", "y": 5})

    def test_scalar_replaced_by_subtree(self):
        self.store.set("a/b", "leaf")
        self.store.set("a/b/c", 1)
        self.assertEqual(self.store.get("a"), {"b": {"c": 1}})

    def test_lists_round_trip(self):
        items = [{"description": "Design", "quantity": 2}, {"description": "Dev"}]
        self.store.set("inv", {"items": items})
        self.assertEqual(self.store.get("inv/items"), items)

    def test_children_enumerate_in_push_order(self):
        ids = [self.store.push_id() for _ in range(5)]
        for record_id in reversed(ids):
            self.store.set(f"col/{record_id}", {"n": record_id})
        self.assertEqual(list(self.store.get("col")), ids)

    def test_keys_with_like_wildcards_do_not_leak(self):
        self.store.set("users/a_b/x", 1)
        self.store.set("users/aXb/x", 2)
        self.assertEqual(self.store.get("users/a_b"), {"x": 1})

    def test_subscription_receives_initial_and_related_changes(self):
        received = []
        sub = self.store.subscribe("users/u1/tasks", received.append)
        self.assertEqual(received, [None])

        self.store.set("users/u1/tasks/t1", {"name": "Write"})
        self.store.set("users/u2/tasks/t1", {"name": "Other user"})
        self.store.update("users/u1", {"theme": "dark"})
        self.assertEqual(len(received), 3)
        self.assertEqual(received[1], {"t1": {"name": "Write"}})
        self.assertEqual(received[2], {"t1": {"name": "Write"}})

        sub.close()
        self.store.set("users/u1/tasks/t2", {"name": "Late"})
        self.assertEqual(len(received), 3)

    def test_close_is_idempotent_and_detaches(self):
        sub = self.store.subscribe("x", lambda snapshot: None)
        self.assertEqual(self.store.subscriber_count(), 1)
        sub.close()
        sub.close()
        self.assertEqual(self.store.subscriber_count(), 0)

    def test_failing_listener_does_not_block_others(self):
        received = []

        def broken(snapshot):
            if snapshot is not None:
                raise RuntimeError("boom")

        self.store.subscribe("x", broken)
        self.store.subscribe("x", received.append)
        self.store.set("x/y", 1)
        self.assertEqual(received, [None, {"y": 1}])


class InMemoryDocumentStoreTests(StoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryDocumentStore()

    def test_reset_notifies_subscribers(self):
        received = []
        self.store.set("a/b", 1)
        self.store.subscribe("a", received.append)
        self.store.reset()
        self.assertEqual(received, [{"b": 1}, None])


class SqlDocumentStoreTests(StoreContract, unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the SQL store logic.
    """

    def make_store(self):
        return SqlDocumentStore("sqlite+pysqlite:///:memory:")

    def test_requires_database_url(self):
        with self.assertRaises(ValueError):
            SqlDocumentStore("")

    def test_read_failure_is_reported_to_subscription(self):
        errors = []
        self.store.subscribe("x", lambda snapshot: None, errors.append)
        NodeRow.__table__.drop(self.store.engine)
        with self.assertRaises(StoreError):
            self.store.set("x/y", 1)
        self.store._dispatch("x")
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], StoreError)


class SharedFeedTests(unittest.TestCase):
    def setUp(self):
        handle, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(handle)

    def tearDown(self):
        os.remove(self.db_path)

    def test_write_in_one_store_reaches_subscription_in_another(self):
        url = f"sqlite+pysqlite:///{self.db_path}"
        feed = InProcessChangeFeed()
        writer = SqlDocumentStore(url, feed=feed)
        reader = SqlDocumentStore(url, feed=feed)
        received = []
        reader.subscribe("users/u1/goals", received.append)

        writer.set("users/u1/goals/g1", {"name": "Ship"})

        self.assertEqual(received[-1], {"g1": {"name": "Ship"}})
        writer.engine.dispose()
        reader.engine.dispose()


if __name__ == "__main__":
    unittest.main()
