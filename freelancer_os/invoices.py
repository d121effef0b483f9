"""
Invoice editing helpers: line items, totals and invoice numbers.
"""

from __future__ import annotations

import datetime as dt
import re
import uuid
from typing import Iterable, Optional

from freelancer_os.errors import NotFound
from freelancer_os.schemas import Invoice, InvoiceItem

PAYMENT_TERM_DAYS = 30


def new_line_item(description: str = "", quantity: float = 1, rate: float = 0) -> InvoiceItem:
    return InvoiceItem(
        id=uuid.uuid4().hex[:12], description=description, quantity=quantity, rate=rate
    )


def add_line_item(items: list[InvoiceItem]) -> list[InvoiceItem]:
    return [*items, new_line_item()]


def remove_line_item(items: list[InvoiceItem], item_id: str) -> list[InvoiceItem]:
    """Drop a line; an invoice always keeps at least one."""
    if len(items) <= 1:
        return list(items)
    return [item for item in items if item.id != item_id]


def change_line_item(
    items: list[InvoiceItem], item_id: str, **changes
) -> list[InvoiceItem]:
    """Return the lines with one line changed; its amount is recomputed."""
    updated = []
    found = False
    for item in items:
        if item.id == item_id:
            found = True
            item = InvoiceItem.model_validate({**item.model_dump(), **changes})
        updated.append(item)
    if not found:
        raise NotFound(f"No invoice line with id {item_id!r}")
    return updated


def invoice_total(items: Iterable[InvoiceItem]) -> float:
    return sum(item.amount for item in items)


def default_dates(today: Optional[dt.date] = None) -> tuple[dt.date, dt.date]:
    """Invoice date and due date for a new invoice."""
    today = today or dt.date.today()
    return today, today + dt.timedelta(days=PAYMENT_TERM_DAYS)


def generate_invoice_number(
    existing_numbers: Iterable[str], today: Optional[dt.date] = None
) -> str:
    """Next ``INV-YYYYMM-NNNN`` number for the month of ``today``."""
    today = today or dt.date.today()
    prefix = f"INV-{today:%Y%m}-"
    max_seq = 0
    for number in existing_numbers:
        match = re.match(rf"{re.escape(prefix)}(\d{{4}})$", number or "")
        if match:
            max_seq = max(max_seq, int(match.group(1)))
    return f"{prefix}{max_seq + 1:04d}"


def draft_invoice(
    existing_numbers: Iterable[str], today: Optional[dt.date] = None
) -> dict:
    """Stored-form fields of a new invoice: next number, default dates, one blank line."""
    issued, due = default_dates(today)
    return {
        "invoiceNumber": generate_invoice_number(existing_numbers, issued),
        "date": issued.isoformat(),
        "dueDate": due.isoformat(),
        "items": [new_line_item().to_document()],
        "status": "Draft",
    }


def with_defaults(
    payload: dict, existing_numbers: Iterable[str], today: Optional[dt.date] = None
) -> dict:
    """
    Fill in what a new invoice may leave out: the invoice number, the invoice
    and due dates, the line items and the ids of individual lines.

    A due date left out of an invoice with an explicit date is that date plus
    the payment term.
    """
    aliases = Invoice.field_aliases()
    document = {aliases.get(key, key): value for key, value in payload.items()}
    draft = draft_invoice(existing_numbers, today)

    if not document.get("invoiceNumber"):
        document["invoiceNumber"] = draft["invoiceNumber"]
    if not document.get("dueDate") and document.get("date"):
        try:
            issued = dt.date.fromisoformat(str(document["date"]))
        except ValueError:
            issued = None
        if issued is not None:
            document["dueDate"] = (issued + dt.timedelta(days=PAYMENT_TERM_DAYS)).isoformat()
    for key in ("date", "dueDate"):
        if not document.get(key):
            document[key] = draft[key]

    items = document.get("items")
    if items is None:
        document["items"] = draft["items"]
    elif isinstance(items, list):
        document["items"] = [
            {**item, "id": item.get("id") or new_line_item().id}
            if isinstance(item, dict)
            else item
            for item in items
        ]
    return document
