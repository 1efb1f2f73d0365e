"""Remote payment application."""

from datetime import datetime, timezone
from typing import Any

import structlog

from books_sync.client import BooksApiClient
from books_sync.exceptions import SyncError
from books_sync.mapping import FieldMapper, StaticFieldMapper
from books_sync.models import InvoiceStatus, LocalOrder, PaymentOutcome, RemoteInvoice

logger = structlog.get_logger(__name__)

# Gateways whose transaction ids are too long for the remote reference field
LONG_TRANSACTION_ID_METHODS = frozenset({
    "bitcoin",
    "btc",
    "btcpay",
    "btcpay_greenfield",
    "coinbase",
    "coinbase_commerce",
    "bitpay",
    "opennode",
})


class PaymentService:
    """Records a local payment against a remote invoice."""

    def __init__(
        self,
        client: BooksApiClient,
        mapper: FieldMapper | None = None,
        apply_bank_fees: bool = True,
        deposit_account_id: str | None = None,
    ):
        self.client = client
        self.mapper = mapper or StaticFieldMapper()
        self.apply_bank_fees = apply_bank_fees
        self.deposit_account_id = deposit_account_id

    def bank_charges(self, order: LocalOrder) -> float:
        """
        Gateway fee in the order's currency.

        A fee charged in another currency is converted with the gateway's
        own rate, ``(net + fee) / total``. Without the data to derive it,
        the fee is skipped.
        """
        fee = round(order.gateway_fee or 0.0, 2)
        if fee <= 0:
            return 0.0

        fee_currency = (order.gateway_fee_currency or "").upper()
        if not fee_currency or fee_currency == order.currency.upper():
            return fee

        rate = None
        if order.gateway_net is not None and order.total > 0:
            gateway_total = order.gateway_net + fee
            if gateway_total > 0:
                rate = gateway_total / order.total

        if not rate:
            logger.warning(
                "Bank fee currency mismatch, skipping fee",
                record_id=order.id,
                fee=fee,
                fee_currency=fee_currency,
                order_currency=order.currency,
                notify=True,
            )
            return 0.0

        converted = round(fee / rate, 2)
        logger.info(
            "Converted bank fee to order currency",
            record_id=order.id,
            original_fee=f"{fee} {fee_currency}",
            converted_fee=f"{converted} {order.currency}",
            exchange_rate=round(rate, 6),
        )
        return converted

    def reference_for(self, order: LocalOrder) -> str:
        if order.payment_method in LONG_TRANSACTION_ID_METHODS:
            return order.number
        return order.transaction_id or order.number

    def build_payload(
        self,
        order: LocalOrder,
        invoice_id: str,
        contact_id: str,
        amount: float,
    ) -> dict[str, Any]:
        mapping = self.mapper.payment_mode(order.payment_method)
        payload: dict[str, Any] = {
            "customer_id": contact_id,
            "date": datetime.now(timezone.utc).date().isoformat(),
            "amount": amount,
            "invoices": [{"invoice_id": invoice_id, "amount_applied": amount}],
            "payment_mode": mapping.mode,
            "reference_number": self.reference_for(order),
            "description": f"Payment for order #{order.number}",
        }

        # Bank charges are only accepted together with a deposit account
        account_id = mapping.account_id or self.deposit_account_id
        if account_id:
            payload["account_id"] = account_id
            charges = self.bank_charges(order) if self.apply_bank_fees else 0.0
            if charges > 0:
                payload["bank_charges"] = charges
                if mapping.fee_account_id:
                    payload["bank_charges_account_id"] = mapping.fee_account_id

        return payload

    def apply(self, order: LocalOrder, invoice: RemoteInvoice, contact_id: str) -> PaymentOutcome:
        """
        Record the local paid amount against ``invoice``.

        The amount is the lesser of the paid amount and the remote balance.
        An invoice already settled remotely counts as success.
        """
        log = logger.bind(record_id=order.id, invoice_id=invoice.invoice_id)
        amount = round(order.amount_paid, 2)

        if amount <= 0:
            log.debug("Skipping payment for zero amount")
            return PaymentOutcome(success=True)

        lifecycle = invoice.lifecycle
        if lifecycle == InvoiceStatus.VOID:
            return PaymentOutcome(
                success=False,
                error="Invoice is void and cannot accept payments",
                error_kind="conflict",
            )
        if lifecycle == InvoiceStatus.DRAFT:
            return PaymentOutcome(
                success=False,
                error="Invoice is draft and cannot accept payments",
                error_kind="remote",
            )
        if lifecycle == InvoiceStatus.PAID or invoice.outstanding <= 0:
            log.debug("Invoice already paid")
            return PaymentOutcome(success=True, already_recorded=True)

        payment_amount = round(min(amount, invoice.outstanding), 2)
        if abs(amount - invoice.outstanding) > 0.01:
            log.warning(
                "Payment amount differs from invoice balance",
                paid=amount,
                balance=invoice.outstanding,
                applying=payment_amount,
            )

        payload = self.build_payload(order, invoice.invoice_id, contact_id, payment_amount)
        try:
            payment = self.client.create_payment(payload)
        except SyncError as e:
            log.error("Failed to apply payment", amount=payment_amount, error=str(e))
            return PaymentOutcome(success=False, error=str(e), error_kind=e.kind)

        payment_id = str(payment.get("payment_id", "")) or None
        log.info(
            "Payment applied",
            payment_id=payment_id,
            payment_number=payment.get("payment_number"),
            amount=payment_amount,
        )
        return PaymentOutcome(
            success=True,
            payment_id=payment_id,
            payment_number=payment.get("payment_number"),
            amount=payment_amount,
            bank_charges=payload.get("bank_charges", 0.0),
        )
