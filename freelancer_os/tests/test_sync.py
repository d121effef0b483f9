import itertools
import unittest
from unittest.mock import patch

from freelancer_os import sync
from freelancer_os.errors import (
    InvalidRecord,
    NotAuthenticated,
    NotFound,
    StoreError,
    WriteError,
)
from freelancer_os.identity import Identity
from freelancer_os.schemas import Client
from freelancer_os.store import InMemoryDocumentStore
from freelancer_os.sync import COLLECTIONS, CollectionState, CollectionSync


def counter_clock():
    ticks = itertools.count(1)
    return lambda: f"2024-01-01T00:00:{next(ticks):02d}+00:00"


CLIENT = {"name": "Acme", "company": "Acme Ltd", "startDate": "2024-01-15"}


class CollectionSyncTests(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryDocumentStore()
        self.identity = Identity(uid="u1", email="a@example.com")
        self.clients = CollectionSync(
            self.store, self.identity, "clients", Client, clock=counter_clock()
        ).open()

    def tearDown(self):
        self.clients.close()

    def test_open_loads_then_settles(self):
        states = []
        tasks = sync.tasks(self.store, self.identity)
        tasks.on_change(states.append)
        tasks.open()
        self.assertTrue(states[0].is_loading)
        self.assertEqual(states[-1], CollectionState())
        tasks.close()

    def test_add_appends_one_record_with_timestamps(self):
        before = len(self.clients.items)
        record_id = self.clients.add(CLIENT)

        self.assertEqual(len(self.clients.items), before + 1)
        client = self.clients.get(record_id)
        self.assertEqual(client.name, "Acme")
        self.assertEqual(client.created_at, client.updated_at)
        stored = self.store.get(f"users/u1/clients/{record_id}")
        self.assertEqual(stored["startDate"], "2024-01-15")
        self.assertNotIn("id", stored)

    def test_add_accepts_model_instances(self):
        record_id = self.clients.add(
            Client(name="Globex", start_date="2024-02-01", status="Active")
        )
        self.assertEqual(self.clients.get(record_id).status, "Active")

    def test_add_rejects_invalid_record(self):
        with self.assertRaises(InvalidRecord):
            self.clients.add({"company": "No name"})
        self.assertEqual(self.clients.items, ())

    def test_items_follow_creation_order(self):
        for name in ("First", "Second", "Third"):
            self.clients.add({**CLIENT, "name": name})
        self.assertEqual(
            [c.name for c in self.clients.items], ["First", "Second", "Third"]
        )

    def test_update_merges_and_advances_updated_at(self):
        record_id = self.clients.add(CLIENT)
        created = self.clients.get(record_id)

        self.clients.update_item(record_id, notes="Call back", paymentStatus="Paid")

        updated = self.clients.get(record_id)
        self.assertEqual(updated.notes, "Call back")
        self.assertEqual(updated.payment_status, "Paid")
        self.assertEqual(updated.company, "Acme Ltd")
        self.assertEqual(updated.created_at, created.created_at)
        self.assertGreater(updated.updated_at, created.updated_at)

    def test_update_missing_record_raises_not_found(self):
        with self.assertRaises(NotFound):
            self.clients.update_item("missing", notes="x")
        self.assertIsNone(self.store.get("users/u1/clients/missing"))

    def test_update_rejects_unknown_and_read_only_fields(self):
        record_id = self.clients.add(CLIENT)
        with self.assertRaises(InvalidRecord):
            self.clients.update_item(record_id, colour="blue")
        with self.assertRaises(InvalidRecord):
            self.clients.update_item(record_id, created_at="yesterday")
        with self.assertRaises(InvalidRecord):
            self.clients.update_item(record_id, status="Archived")

    def test_ids_that_cannot_be_stored_are_treated_as_absent(self):
        for record_id in ("bad.id", "a/b", "x#1", "$key", "[0]", ""):
            with self.subTest(record_id=record_id):
                self.clients.delete_item(record_id)
                with self.assertRaises(NotFound):
                    self.clients.update_item(record_id, notes="x")
                self.assertIsNone(self.clients.get(record_id))

    def test_field_names_matching_parameters_are_rejected(self):
        record_id = self.clients.add(CLIENT)
        with self.assertRaises(InvalidRecord):
            self.clients.update_item(record_id, record_id="other")
        with self.assertRaises(InvalidRecord):
            self.clients.update_item(record_id, **{"self": "x"})
        self.assertEqual(self.clients.get(record_id).name, "Acme")

    def test_delete_is_idempotent(self):
        record_id = self.clients.add(CLIENT)
        self.clients.delete_item(record_id)
        self.assertIsNone(self.clients.get(record_id))
        self.clients.delete_item(record_id)
        self.assertEqual(self.clients.items, ())

    def test_records_are_scoped_to_identity(self):
        self.clients.add(CLIENT)
        other = sync.clients(self.store, Identity(uid="u2", email="b@example.com"))
        with other:
            self.assertEqual(other.items, ())

    def test_close_stops_deliveries(self):
        self.clients.add(CLIENT)
        seen = []
        self.clients.on_change(seen.append)
        self.clients.close()

        self.store.set("users/u1/clients/late", {**CLIENT, "name": "Late"})

        self.assertEqual(seen, [])
        self.assertEqual(len(self.clients.items), 1)
        self.assertFalse(self.clients.is_open)

    def test_malformed_snapshot_sets_error_and_keeps_items(self):
        self.clients.add(CLIENT)
        self.store.set("users/u1/clients/broken", "not a record")

        state = self.clients.state
        self.assertFalse(state.is_loading)
        self.assertIsNotNone(state.error)
        self.assertEqual(len(state.items), 1)

    def test_store_failure_surfaces_as_write_error(self):
        with patch.object(self.store, "set", side_effect=StoreError("offline")):
            with self.assertRaises(WriteError):
                self.clients.add(CLIENT)
        with patch.object(self.store, "remove", side_effect=StoreError("offline")):
            with self.assertRaises(WriteError):
                self.clients.delete_item("any")

    def test_unknown_collection(self):
        with self.assertRaises(NotFound):
            sync.open_collection(self.store, self.identity, "notes")


class SignedOutCollectionTests(unittest.TestCase):
    def test_every_collection_is_empty_and_refuses_writes(self):
        store = InMemoryDocumentStore()
        for name, model in COLLECTIONS.items():
            with self.subTest(collection=name):
                collection = CollectionSync(store, None, name, model).open()
                self.assertEqual(collection.state, CollectionState())
                with self.assertRaises(NotAuthenticated):
                    collection.add({"name": "x"})
                with self.assertRaises(NotAuthenticated):
                    collection.update_item("any", notes="x")
                with self.assertRaises(NotAuthenticated):
                    collection.delete_item("any")
                collection.close()
        self.assertEqual(store.subscriber_count(), 0)


class InvoiceCollectionTests(unittest.TestCase):
    def test_totals_are_recomputed_on_add_and_update(self):
        store = InMemoryDocumentStore()
        invoices = sync.invoices(store, Identity(uid="u1", email="a@example.com"))
        with invoices:
            record_id = invoices.add(
                {
                    "clientId": "c1",
                    "invoiceNumber": "INV-202401-0001",
                    "date": "2024-01-01",
                    "dueDate": "2024-01-31",
                    "items": [
                        {"id": "a", "description": "Design", "quantity": 2, "rate": 100},
                        {"id": "b", "description": "Hosting", "quantity": 1, "rate": 50},
                    ],
                    "total": 1,
                }
            )
            self.assertEqual(invoices.get(record_id).total, 250)

            items = [item.model_dump() for item in invoices.get(record_id).items]
            items[0]["quantity"] = 3
            invoices.update_item(record_id, items=items)

            invoice = invoices.get(record_id)
            self.assertEqual(invoice.items[0].amount, 300)
            self.assertEqual(invoice.total, 350)
            self.assertEqual(store.get(f"users/u1/invoices/{record_id}/total"), 350)


if __name__ == "__main__":
    unittest.main()
