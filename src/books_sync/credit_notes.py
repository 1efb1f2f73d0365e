"""Credit notes and cash refunds for local refunds."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from books_sync.client import BooksApiClient
from books_sync.exceptions import SyncError
from books_sync.mapping import FieldMapper, StaticFieldMapper
from books_sync.models import CreditNoteRef, LocalOrder, LocalRefund

logger = structlog.get_logger(__name__)


@dataclass
class RefundOutcome:
    credit_note: CreditNoteRef
    apply_error: str | None = None


class RefundService:
    """
    One remote credit note per local refund.

    Steps: create the credit note, apply it to the invoice, then optionally
    record the cash refund. Only the first step is fatal; the credit note
    exists even when the later steps fail.
    """

    def __init__(
        self,
        client: BooksApiClient,
        mapper: FieldMapper | None = None,
        create_cash_refund: bool = True,
    ):
        self.client = client
        self.mapper = mapper or StaticFieldMapper()
        self.create_cash_refund = create_cash_refund

    def build_line_items(self, order: LocalOrder, refund: LocalRefund) -> list[dict[str, Any]]:
        items = []
        for item in refund.line_items:
            quantity = abs(item.quantity)
            if quantity <= 0:
                continue
            items.append({
                "name": item.name,
                "quantity": quantity,
                "rate": round(abs(item.rate), 2),
            })

        if refund.shipping_total:
            items.append({"name": "Shipping Refund", "quantity": 1, "rate": abs(refund.shipping_total)})

        if not items:
            items.append({
                "name": f"Refund for order #{order.number}",
                "description": refund.reason or "Refund",
                "quantity": 1,
                "rate": refund.amount,
            })
        return items

    def build_payload(self, order: LocalOrder, refund: LocalRefund, contact_id: str) -> dict[str, Any]:
        return {
            "customer_id": contact_id,
            "creditnote_number": f"CN-{order.number}-{refund.id}",
            "reference_number": f"Refund for order #{order.number}",
            "date": datetime.now(timezone.utc).date().isoformat(),
            "line_items": self.build_line_items(order, refund),
            "notes": refund.reason or "Refund",
        }

    def process(
        self,
        order: LocalOrder,
        refund: LocalRefund,
        invoice_id: str,
        contact_id: str,
    ) -> RefundOutcome:
        """
        Raises:
            SyncError: The credit note itself could not be created
        """
        log = logger.bind(record_id=order.id, refund_id=refund.id, invoice_id=invoice_id)

        note = self.client.create_credit_note(self.build_payload(order, refund, contact_id))
        credit_note_id = str(note.get("creditnote_id", ""))
        if not credit_note_id:
            raise SyncError("Credit note response did not include an id")

        ref = CreditNoteRef(
            local_refund_id=refund.id,
            credit_note_id=credit_note_id,
            credit_note_number=note.get("creditnote_number"),
            amount=refund.amount,
        )
        log.info("Created credit note", credit_note_id=credit_note_id, amount=refund.amount)

        apply_error = None
        try:
            self.client.apply_credit_note(credit_note_id, invoice_id, refund.amount)
        except SyncError as e:
            apply_error = str(e)
            ref.applied = False
            log.warning(
                "Credit note could not be applied to invoice",
                credit_note_id=credit_note_id,
                error=apply_error,
                notify=True,
            )

        if self.create_cash_refund:
            mode = self.mapper.payment_mode(order.payment_method)
            try:
                cash = self.client.refund_credit_note(credit_note_id, {
                    "date": datetime.now(timezone.utc).date().isoformat(),
                    "refund_mode": mode.mode,
                    "amount": refund.amount,
                    "description": f"Refund for order #{order.number}",
                    **({"from_account_id": mode.account_id} if mode.account_id else {}),
                })
                ref.remote_refund_id = str(cash.get("creditnote_refund_id", "")) or None
            except SyncError as e:
                log.warning("Cash refund failed", credit_note_id=credit_note_id, error=str(e))

        return RefundOutcome(credit_note=ref, apply_error=apply_error)
