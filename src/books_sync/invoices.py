"""Remote invoice materialization and integrity checks."""

from typing import Any

import structlog

from books_sync.client import BooksApiClient
from books_sync.mapping import FieldMapper, StaticFieldMapper
from books_sync.models import InvoiceStatus, LocalOrder, RemoteInvoice

logger = structlog.get_logger(__name__)


class InvoiceService:
    """
    Turns a local order into a remote invoice.

    The local order number is always written to ``reference_number`` so an
    invoice can be found again after local state is lost.
    """

    def __init__(
        self,
        client: BooksApiClient,
        mapper: FieldMapper | None = None,
        tolerance: float = 0.01,
    ):
        self.client = client
        self.mapper = mapper or StaticFieldMapper()
        self.tolerance = tolerance

    def build_line_items(self, order: LocalOrder) -> list[dict[str, Any]]:
        items = []
        for item in order.line_items:
            if item.quantity <= 0:
                continue
            line: dict[str, Any] = {
                "name": item.name,
                "quantity": item.quantity,
                "rate": round(item.rate, 2),
            }
            if item.description:
                line["description"] = item.description
            item_id = self.mapper.item_id(item.sku)
            if item_id is not None and item_id != "":
                line["item_id"] = item_id
            items.append(line)

        if order.fee_total:
            items.append({"name": "Fees", "quantity": 1, "rate": round(order.fee_total, 2)})
        return items

    def build_payload(self, order: LocalOrder, contact_id: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "customer_id": contact_id,
            "date": order.created_at.date().isoformat(),
            "reference_number": order.number,
            "currency_code": order.currency,
            "line_items": self.build_line_items(order),
            "notes": f"Synced from order #{order.number}",
        }
        if order.shipping_total > 0:
            payload["shipping_charge"] = round(order.shipping_total, 2)
        if order.discount_total > 0:
            payload["discount"] = round(order.discount_total, 2)
            payload["discount_type"] = "entity_level"
            payload["is_discount_before_tax"] = True

        custom_fields = self.mapper.custom_fields(order)
        if custom_fields:
            payload["custom_fields"] = custom_fields
        return payload

    def get(self, invoice_id: str) -> RemoteInvoice:
        """Raises NotFoundError when the invoice was deleted remotely."""
        return self.client.get_invoice(invoice_id)

    def find_by_reference(self, reference: str) -> RemoteInvoice | None:
        for invoice in self.client.find_invoices(reference_number=reference):
            # The search matches substrings
            if invoice.reference_number == reference and invoice.lifecycle != InvoiceStatus.VOID:
                return invoice
        return None

    def compare(self, invoice: RemoteInvoice, order: LocalOrder) -> list[dict[str, Any]]:
        """Fields where the remote invoice drifted from the local order."""
        drift = []

        if abs(invoice.total - order.total) > self.tolerance:
            drift.append({"field": "total", "remote": invoice.total, "local": order.total})

        expected_lines = len(self.build_line_items(order))
        if len(invoice.line_items) != expected_lines:
            drift.append({
                "field": "line_item_count",
                "remote": len(invoice.line_items),
                "local": expected_lines,
            })

        if invoice.reference_number and invoice.reference_number != order.number:
            drift.append({
                "field": "reference_number",
                "remote": invoice.reference_number,
                "local": order.number,
            })

        return drift

    def create(self, order: LocalOrder, contact_id: str, as_draft: bool) -> RemoteInvoice:
        invoice = self.client.create_invoice(self.build_payload(order, contact_id))
        logger.info(
            "Created invoice",
            record_id=order.id,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            as_draft=as_draft,
        )
        if not as_draft:
            invoice = self.submit(invoice)
        return invoice

    def update(self, invoice_id: str, order: LocalOrder, contact_id: str) -> RemoteInvoice:
        invoice = self.client.update_invoice(invoice_id, self.build_payload(order, contact_id))
        logger.info("Updated invoice", record_id=order.id, invoice_id=invoice_id)
        return invoice

    def submit(self, invoice: RemoteInvoice) -> RemoteInvoice:
        """Move a draft invoice into the remote workflow (status ``sent``)."""
        if invoice.lifecycle != InvoiceStatus.DRAFT:
            return invoice
        self.client.mark_invoice_sent(invoice.invoice_id)
        logger.info("Marked invoice as sent", invoice_id=invoice.invoice_id)
        return invoice.model_copy(update={"status": InvoiceStatus.SENT.value})
