"""
Sync state machine for one local record.

    PENDING -> DRAFT | SYNCED
    any in-flight attempt -> FAILED -> DRAFT | SYNCED (on retry)

Every remote failure is caught here, classified, logged and persisted as
FAILED with ``last_error``. Only programming errors escape to the caller.
"""

from datetime import datetime, timezone
from typing import Any, Callable

import structlog

from books_sync.config import SyncSettings
from books_sync.contacts import ContactService
from books_sync.credit_notes import RefundService
from books_sync.exceptions import ConflictError, NotFoundError, RecordLockedError, SyncError
from books_sync.invoices import InvoiceService
from books_sync.locks import RecordLockRegistry
from books_sync.models import (
    InvoiceStatus,
    LocalOrder,
    LocalRefund,
    PaymentOutcome,
    RemoteInvoice,
    SyncRecordState,
    SyncResult,
    SyncStatus,
    UnappliedCredit,
)
from books_sync.payments import PaymentService
from books_sync.store import RecordStateStore
from books_sync.triggers import TriggerPolicy

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_for(invoice: RemoteInvoice) -> SyncStatus:
    """Local status follows the remote disposition, not the request."""
    return SyncStatus.DRAFT if invoice.lifecycle == InvoiceStatus.DRAFT else SyncStatus.SYNCED


class SyncOrchestrator:
    """
    Sequences contact, invoice, payment and refund services for a record.

    Example:
        orchestrator = SyncOrchestrator(store, contacts, invoices, payments, refunds)

        result = orchestrator.sync_record(order, as_draft=True)
        if result.success:
            print(result.remote_invoice_id)
    """

    def __init__(
        self,
        store: RecordStateStore,
        contacts: ContactService,
        invoices: InvoiceService,
        payments: PaymentService,
        refunds: RefundService,
        settings: SyncSettings | None = None,
        policy: TriggerPolicy | None = None,
        locks: RecordLockRegistry | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.contacts = contacts
        self.invoices = invoices
        self.payments = payments
        self.refunds = refunds
        self.settings = settings or SyncSettings()
        self.policy = policy or TriggerPolicy()
        self.locks = locks or RecordLockRegistry()
        self._clock = clock

    # -------------------------------------------------------------------------
    # Invoice sync
    # -------------------------------------------------------------------------

    def sync_record(
        self,
        order: LocalOrder,
        as_draft: bool = False,
        force: bool = False,
        with_payment: bool = False,
    ) -> SyncResult:
        """
        Mirror ``order`` as a remote invoice.

        Args:
            order: The local record
            as_draft: Leave the remote invoice as a draft
            force: Bypass the idempotency gate (manual re-sync, retries)
            with_payment: Apply the local payment once the invoice exists

        Returns:
            SyncResult; ``pending`` when another trigger holds the record
        """
        try:
            with self.locks.hold(order.id, wait=self.settings.lock_wait_seconds):
                return self._sync_locked(order, as_draft, force, with_payment)
        except RecordLockedError as e:
            logger.info("Record busy, sync skipped", record_id=order.id)
            return SyncResult.pending(str(e), error_kind=e.kind)

    @staticmethod
    def _satisfies(state: SyncRecordState, as_draft: bool) -> bool:
        if not state.remote_invoice_id:
            return False
        if state.status == SyncStatus.SYNCED:
            return True
        return state.status == SyncStatus.DRAFT and as_draft

    def _sync_locked(
        self,
        order: LocalOrder,
        as_draft: bool,
        force: bool,
        with_payment: bool,
    ) -> SyncResult:
        log = logger.bind(record_id=order.id, order_number=order.number)
        state = self.store.get_or_create(order.id)
        if state.payment_pending and not with_payment:
            log.info("Payment still pending from an earlier attempt, applying it")
            with_payment = True

        if not force and self._satisfies(state, as_draft):
            log.debug("Already synced, returning stored result", status=state.status.value)
            if with_payment and not state.remote_payment_id:
                return self._pay_after_sync(order, state, invoice=None, data=self._result_data(state))
            return self._result_from_state(state)

        log.info("Starting sync", as_draft=as_draft, force=force, with_payment=with_payment)
        state.last_attempt_at = self._clock()
        state.requested_draft = as_draft
        state.record_date = order.created_at.date()
        data: dict[str, Any] = {}

        try:
            existing, needs_update = None, False
            if state.remote_invoice_id:
                existing, needs_update = self._check_integrity(order, state, data)

            contact = self.contacts.resolve(order, state.remote_contact_id)
            state.remote_contact_id = contact.contact_id

            if existing is None:
                existing = self.invoices.find_by_reference(order.number)
                if existing is not None:
                    log.info("Linking existing remote invoice", invoice_id=existing.invoice_id)
                    data["linked_existing"] = True
                    needs_update = self._assess_drift(order, existing, data)

            if existing is None:
                invoice = self.invoices.create(order, contact.contact_id, as_draft)
            else:
                invoice = existing
                if needs_update:
                    invoice = self.invoices.update(invoice.invoice_id, order, contact.contact_id)
                    data["invoice_updated"] = True
                if not as_draft:
                    invoice = self.invoices.submit(invoice)

        except SyncError as e:
            return self._fail(state, e, data, log)

        state.remote_invoice_id = invoice.invoice_id
        state.remote_invoice_number = invoice.invoice_number
        state.remote_invoice_status = invoice.lifecycle
        state.status = _status_for(invoice)

        log.info(
            "Invoice materialized",
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            status=state.status.value,
        )

        data.update(self._result_data(state))
        if with_payment and not state.remote_payment_id:
            # retry_count is only reset once the payment succeeds too
            return self._pay_after_sync(order, state, invoice, data)

        state.last_error = None
        state.last_error_kind = None
        state.retry_count = 0
        state = self.store.save(state)
        return self._result_from_state(state, data)

    def _check_integrity(
        self,
        order: LocalOrder,
        state: SyncRecordState,
        data: dict[str, Any],
    ) -> tuple[RemoteInvoice | None, bool]:
        """
        Verify the stored invoice still exists and matches the order.

        Returns the remote invoice (None if it vanished and must be
        recreated) and whether it needs an update.
        """
        try:
            invoice = self.invoices.get(state.remote_invoice_id)
        except NotFoundError:
            logger.warning(
                "Stored invoice not found remotely, recreating",
                record_id=order.id,
                invoice_id=state.remote_invoice_id,
                notify=True,
            )
            data["recreated_from"] = state.remote_invoice_id
            state.remote_invoice_id = None
            state.remote_invoice_number = None
            state.remote_invoice_status = None
            state.remote_payment_id = None
            state.remote_payment_number = None
            return None, False

        state.remote_invoice_status = invoice.lifecycle
        return invoice, self._assess_drift(order, invoice, data)

    def _assess_drift(self, order: LocalOrder, invoice: RemoteInvoice, data: dict[str, Any]) -> bool:
        """
        True when the invoice should be updated from the order.

        Raises:
            ConflictError: Drift on a locked invoice under the stop policy
        """
        drift = self.invoices.compare(invoice, order)
        if not drift:
            return False

        if not invoice.is_locked:
            logger.info("Invoice drifted from order, updating", record_id=order.id, drift=drift)
            return True

        if self.settings.stop_on_locked_conflict:
            raise ConflictError(
                f"Invoice {invoice.invoice_number or invoice.invoice_id} is {invoice.status} "
                f"and differs from order #{order.number} "
                f"({', '.join(d['field'] for d in drift)})",
                drift=drift,
            )

        logger.warning(
            "Invoice is locked and differs from order, skipping update",
            record_id=order.id,
            invoice_id=invoice.invoice_id,
            invoice_status=invoice.status,
            drift=drift,
            notify=True,
        )
        data["invoice_update_skipped"] = True
        data["drift"] = drift
        return False

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def apply_payment(self, order: LocalOrder, force: bool = False) -> PaymentOutcome:
        """
        Record the local payment on the synced invoice.

        Does not create a second payment when one is stored, unless
        ``force``. Never recreates a missing invoice.
        """
        try:
            with self.locks.hold(order.id, wait=self.settings.lock_wait_seconds):
                state = self.store.get(order.id)
                if state is None or not state.remote_invoice_id:
                    return PaymentOutcome(
                        success=False,
                        error=f"Order #{order.number} has not been synced",
                        error_kind="not_synced",
                    )

                if state.remote_payment_id and not force:
                    logger.debug("Payment already recorded", record_id=order.id)
                    return PaymentOutcome(
                        success=True,
                        payment_id=state.remote_payment_id,
                        payment_number=state.remote_payment_number,
                        already_recorded=True,
                    )

                outcome, state = self._pay_locked(order, state, invoice=None)
                self.store.save(state)
                return outcome
        except RecordLockedError as e:
            return PaymentOutcome(success=False, error=str(e), error_kind=e.kind)

    def _pay_locked(
        self,
        order: LocalOrder,
        state: SyncRecordState,
        invoice: RemoteInvoice | None,
    ) -> tuple[PaymentOutcome, SyncRecordState]:
        """Apply payment and fold the outcome into ``state`` (unsaved)."""
        log = logger.bind(record_id=order.id, invoice_id=state.remote_invoice_id)
        state.last_attempt_at = self._clock()

        try:
            if invoice is None:
                invoice = self.invoices.get(state.remote_invoice_id)
            if (
                invoice.lifecycle == InvoiceStatus.DRAFT
                and self.settings.submit_draft_before_payment
                and order.amount_paid > 0
            ):
                invoice = self.invoices.submit(invoice)
            outcome = self.payments.apply(
                order,
                invoice,
                state.remote_contact_id or invoice.customer_id or "",
            )
        except SyncError as e:
            outcome = PaymentOutcome(success=False, error=str(e), error_kind=e.kind)

        if not outcome.success:
            log.error("Payment failed", error=outcome.error, error_kind=outcome.error_kind)
            state.status = SyncStatus.FAILED
            state.payment_pending = True
            state.last_error = f"Payment failed: {outcome.error}"
            state.last_error_kind = outcome.error_kind
            return outcome, state

        if outcome.payment_id:
            state.remote_payment_id = outcome.payment_id
            state.remote_payment_number = outcome.payment_number
            fully_paid = outcome.amount >= invoice.outstanding - 0.005
            state.remote_invoice_status = (
                InvoiceStatus.PAID if fully_paid else InvoiceStatus.PARTIALLY_PAID
            )
        else:
            state.remote_invoice_status = invoice.lifecycle

        if state.status == SyncStatus.FAILED and state.payment_pending:
            state.status = _status_for(invoice)
        if state.status != SyncStatus.FAILED:
            state.last_error = None
            state.last_error_kind = None
            state.retry_count = 0
        state.payment_pending = False
        return outcome, state

    def _pay_after_sync(
        self,
        order: LocalOrder,
        state: SyncRecordState,
        invoice: RemoteInvoice | None,
        data: dict[str, Any],
    ) -> SyncResult:
        outcome, state = self._pay_locked(order, state, invoice)
        state = self.store.save(state)

        if not outcome.success:
            return SyncResult.failure(
                state.last_error or "Payment failed",
                error_kind=outcome.error_kind,
                remote_invoice_id=state.remote_invoice_id,
                remote_contact_id=state.remote_contact_id,
                data=data,
            )

        if outcome.payment_id:
            data["payment_id"] = outcome.payment_id
        if outcome.already_recorded:
            data["payment_already_recorded"] = True
        data["payment_applied"] = True
        return self._result_from_state(state, data)

    # -------------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------------

    def sync_refund(self, order: LocalOrder, refund: LocalRefund) -> SyncResult:
        """Create (once) the remote credit note for a local refund."""
        try:
            with self.locks.hold(order.id, wait=self.settings.lock_wait_seconds):
                return self._sync_refund_locked(order, refund)
        except RecordLockedError as e:
            return SyncResult.pending(str(e), error_kind=e.kind)

    def _sync_refund_locked(self, order: LocalOrder, refund: LocalRefund) -> SyncResult:
        log = logger.bind(record_id=order.id, refund_id=refund.id)
        state = self.store.get(order.id)
        if state is None or not state.remote_invoice_id:
            log.warning("Cannot process refund, order not synced")
            return SyncResult.failure(
                f"Order #{order.number} has not been synced",
                error_kind="not_synced",
            )

        existing = state.credit_note_for(refund.id)
        if existing is not None:
            log.debug("Refund already processed", credit_note_id=existing.credit_note_id)
            return self._result_from_state(state, {"credit_note_id": existing.credit_note_id})

        if refund.amount <= 0:
            log.debug("Skipping zero amount refund")
            return self._result_from_state(state)

        state.last_attempt_at = self._clock()
        try:
            outcome = self.refunds.process(
                order,
                refund,
                state.remote_invoice_id,
                state.remote_contact_id or "",
            )
        except SyncError as e:
            state.last_error = f"Refund {refund.id} failed: {e}"
            state.last_error_kind = e.kind
            state.status = SyncStatus.FAILED
            state = self.store.save(state)
            log.error("Refund failed", error=str(e), error_kind=e.kind)
            return SyncResult.failure(
                state.last_error,
                error_kind=e.kind,
                remote_invoice_id=state.remote_invoice_id,
                remote_contact_id=state.remote_contact_id,
            )

        ref = outcome.credit_note
        state.remote_credit_note_ids.append(ref)
        if outcome.apply_error:
            state.unapplied_credit = UnappliedCredit(
                credit_note_id=ref.credit_note_id,
                reason=outcome.apply_error,
                timestamp=self._clock(),
            )
        state = self.store.save(state)

        return self._result_from_state(state, {
            "credit_note_id": ref.credit_note_id,
            "credit_note_applied": ref.applied,
            "remote_refund_id": ref.remote_refund_id,
        })

    # -------------------------------------------------------------------------
    # Entry points for triggers and retries
    # -------------------------------------------------------------------------

    def sync_for_status(self, order: LocalOrder, as_draft: bool | None = None) -> SyncResult:
        """
        Run whatever the order's current status triggers.

        Status-change events and bulk runs both enter here. ``as_draft``
        overrides the status-derived disposition; payment is never applied
        to a record synced as draft.
        """
        plan = self.policy.plan(order)
        draft = plan.as_draft if as_draft is None else as_draft

        if plan.is_refund:
            state = self.store.get(order.id)
            if state is None or not state.remote_invoice_id:
                result = self.sync_record(order, as_draft=draft)
                if not result.success:
                    return result
            return self.sync_outstanding_refunds(order)

        return self.sync_record(
            order,
            as_draft=draft,
            with_payment=plan.with_payment and not draft,
        )

    def sync_outstanding_refunds(self, order: LocalOrder) -> SyncResult:
        state = self.store.get(order.id)
        result = SyncResult.failure(
            f"Order #{order.number} has not been synced",
            error_kind="not_synced",
        )
        if state is None or not state.remote_invoice_id:
            return result

        result = self._result_from_state(state)
        for refund in order.refunds:
            if state.credit_note_for(refund.id) is None:
                result = self.sync_refund(order, refund)
                if not result.success:
                    return result
        return result

    def retry_record(self, order: LocalOrder) -> SyncResult:
        """
        Re-run a failed record: forced sync with the last requested
        disposition, then the pending payment, then missing credit notes.
        """
        state = self.store.get_or_create(order.id)
        as_draft = state.requested_draft if state.requested_draft is not None else True

        result = self.sync_record(
            order,
            as_draft=as_draft,
            force=True,
            with_payment=state.payment_pending,
        )
        if not result.success or not order.refunds:
            return result

        refunds_result = self.sync_outstanding_refunds(order)
        if not refunds_result.success:
            return refunds_result
        return result

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _fail(self, state: SyncRecordState, exc: SyncError, data: dict[str, Any], log) -> SyncResult:
        state.status = SyncStatus.FAILED
        state.last_error = str(exc)
        state.last_error_kind = exc.kind
        state = self.store.save(state)

        log.error("Sync failed", error=str(exc), error_kind=exc.kind, retry_count=state.retry_count)
        if isinstance(exc, ConflictError):
            data["drift"] = exc.drift

        return SyncResult.failure(
            str(exc),
            error_kind=exc.kind,
            remote_invoice_id=state.remote_invoice_id,
            remote_contact_id=state.remote_contact_id,
            data=data,
        )

    @staticmethod
    def _result_data(state: SyncRecordState) -> dict[str, Any]:
        return {"invoice_number": state.remote_invoice_number}

    def _result_from_state(
        self,
        state: SyncRecordState,
        data: dict[str, Any] | None = None,
    ) -> SyncResult:
        return SyncResult.ok(
            state.remote_invoice_id,
            remote_contact_id=state.remote_contact_id,
            status=state.status,
            data={**self._result_data(state), **(data or {})},
        )
