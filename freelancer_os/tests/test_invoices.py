import datetime as dt
import unittest

from freelancer_os import invoices
from freelancer_os.errors import NotFound
from freelancer_os.schemas import Invoice, InvoiceItem


class InvoiceItemTests(unittest.TestCase):
    def setUp(self):
        self.items = [
            InvoiceItem(id="a", description="Design", quantity=2, rate=100),
            InvoiceItem(id="b", description="Hosting", quantity=1, rate=50),
        ]

    def test_total_is_sum_of_line_amounts(self):
        self.assertEqual([item.amount for item in self.items], [200, 50])
        self.assertEqual(invoices.invoice_total(self.items), 250)

    def test_changing_quantity_recomputes_amount_and_total(self):
        items = invoices.change_line_item(self.items, "a", quantity=3)
        self.assertEqual(items[0].amount, 300)
        self.assertEqual(invoices.invoice_total(items), 350)
        self.assertEqual(self.items[0].amount, 200)

    def test_change_unknown_line(self):
        with self.assertRaises(NotFound):
            invoices.change_line_item(self.items, "zz", rate=1)

    def test_add_and_remove_lines(self):
        items = invoices.add_line_item(self.items)
        self.assertEqual(len(items), 3)
        self.assertEqual(items[-1].amount, 0)

        items = invoices.remove_line_item(items, "a")
        self.assertEqual([item.id for item in items][:1], ["b"])

    def test_last_line_cannot_be_removed(self):
        single = [self.items[0]]
        self.assertEqual(invoices.remove_line_item(single, "a"), single)

    def test_stored_amounts_are_ignored(self):
        invoice = Invoice.model_validate(
            {
                "clientId": "c1",
                "invoiceNumber": "INV-1",
                "date": "2024-05-01",
                "dueDate": "2024-05-31",
                "items": [{"id": "a", "quantity": 4, "rate": 25, "amount": 1}],
                "total": 9999,
            }
        )
        self.assertEqual(invoice.items[0].amount, 100)
        self.assertEqual(invoice.total, 100)


class InvoiceNumberTests(unittest.TestCase):
    def test_numbers_increment_within_month(self):
        today = dt.date(2024, 5, 15)
        self.assertEqual(invoices.generate_invoice_number([], today), "INV-202405-0001")
        existing = ["INV-202405-0001", "INV-202405-0007", "INV-202404-0042", "custom"]
        self.assertEqual(
            invoices.generate_invoice_number(existing, today), "INV-202405-0008"
        )

    def test_default_dates(self):
        issued, due = invoices.default_dates(dt.date(2024, 1, 15))
        self.assertEqual(issued, dt.date(2024, 1, 15))
        self.assertEqual(due, dt.date(2024, 2, 14))


class NewInvoiceTests(unittest.TestCase):
    TODAY = dt.date(2024, 3, 10)

    def test_draft_invoice(self):
        draft = invoices.draft_invoice(["INV-202403-0004"], self.TODAY)
        self.assertEqual(draft["invoiceNumber"], "INV-202403-0005")
        self.assertEqual(draft["date"], "2024-03-10")
        self.assertEqual(draft["dueDate"], "2024-04-09")
        self.assertEqual(draft["status"], "Draft")
        self.assertEqual(len(draft["items"]), 1)
        self.assertTrue(draft["items"][0]["id"])

    def test_missing_fields_are_filled(self):
        document = invoices.with_defaults(
            {"clientId": "c1", "items": [{"description": "Design", "rate": 80}]},
            [],
            self.TODAY,
        )
        self.assertEqual(document["invoiceNumber"], "INV-202403-0001")
        self.assertEqual(document["date"], "2024-03-10")
        self.assertEqual(document["dueDate"], "2024-04-09")
        self.assertTrue(document["items"][0]["id"])
        invoice = Invoice.from_document("i1", document)
        self.assertEqual(invoice.total, 80)

    def test_explicit_values_are_kept(self):
        payload = {
            "clientId": "c1",
            "invoiceNumber": "CUSTOM-1",
            "date": "2024-01-01",
            "dueDate": "2024-01-15",
            "items": [{"id": "a", "quantity": 1, "rate": 10}],
        }
        self.assertEqual(invoices.with_defaults(payload, [], self.TODAY), payload)

    def test_due_date_follows_explicit_date(self):
        document = invoices.with_defaults(
            {"client_id": "c1", "date": "2024-01-01"}, [], self.TODAY
        )
        self.assertEqual(document["clientId"], "c1")
        self.assertEqual(document["dueDate"], "2024-01-31")
        self.assertEqual(len(document["items"]), 1)

    def test_unparseable_date_is_left_for_validation(self):
        document = invoices.with_defaults({"clientId": "c1", "date": "soon"}, [], self.TODAY)
        self.assertEqual(document["date"], "soon")
        self.assertEqual(document["dueDate"], "2024-04-09")


if __name__ == "__main__":
    unittest.main()
