"""
Tests for the per-record sync state machine against the fake service.
"""

import pytest

from books_sync.models import InvoiceStatus, SyncStatus

from conftest import make_order


def invoice_posts(books):
    return books.api_calls("POST", "/invoices")


class TestDraftSync:
    """Creating and re-syncing draft invoices."""

    def test_creates_draft_invoice(self, engine, books, order):
        result = engine.sync_record(order, as_draft=True)

        assert result.success
        assert result.status == SyncStatus.DRAFT
        invoice = books.invoices[result.remote_invoice_id]
        assert invoice["status"] == "draft"
        assert invoice["reference_number"] == "1042"
        assert invoice["total"] == 132.5
        assert result.data["invoice_number"] == invoice["invoice_number"]

        state = engine.store.get("1042")
        assert state.status == SyncStatus.DRAFT
        assert state.remote_contact_id == result.remote_contact_id
        assert state.record_date.isoformat() == "2024-03-01"

    def test_second_call_is_idempotent(self, engine, books, order):
        first = engine.sync_record(order, as_draft=True)
        second = engine.sync_record(order, as_draft=True)

        assert second == first
        assert len(invoice_posts(books)) == 1
        assert len(books.contacts) == 1

    def test_contact_reused_across_orders(self, engine, books, order):
        engine.sync_record(order, as_draft=True)
        engine.sync_record(make_order(id="1043", number="1043"), as_draft=True)

        assert len(books.contacts) == 1
        assert len(books.api_calls("GET", "/contacts")) == 1

    def test_draft_request_does_not_downgrade_synced(self, engine, books, order):
        engine.sync_record(order, as_draft=False)
        result = engine.sync_record(order, as_draft=True)

        assert result.status == SyncStatus.SYNCED
        assert len(books.api_calls("POST", r"/invoices/\d+/status/sent")) == 1

    def test_final_after_draft_submits_existing(self, engine, books, order):
        draft = engine.sync_record(order, as_draft=True)
        final = engine.sync_record(order, as_draft=False)

        assert final.remote_invoice_id == draft.remote_invoice_id
        assert final.status == SyncStatus.SYNCED
        assert books.invoices[draft.remote_invoice_id]["status"] == "sent"
        assert len(invoice_posts(books)) == 1


class TestFinalSync:
    """Submitting invoices and applying payment."""

    def test_submits_and_pays(self, engine, books, order):
        result = engine.sync_record(order, as_draft=False, with_payment=True)

        assert result.success
        assert result.status == SyncStatus.SYNCED
        assert result.data["payment_applied"] is True

        invoice = books.invoices[result.remote_invoice_id]
        assert invoice["status"] == "paid"
        assert invoice["payment_made"] == 132.5

        payment = books.payments[result.data["payment_id"]]
        assert payment["payment_mode"] == "Credit Card"
        assert payment["reference_number"] == "ch_3OqZ2b"

        state = engine.store.get("1042")
        assert state.remote_payment_id == result.data["payment_id"]
        assert state.remote_invoice_status == InvoiceStatus.PAID

    def test_payment_not_duplicated(self, engine, books, order):
        engine.sync_record(order, as_draft=False, with_payment=True)
        outcome = engine.apply_payment(order)

        assert outcome.success
        assert outcome.already_recorded
        assert len(books.payments) == 1

    def test_apply_payment_submits_draft_and_keeps_local_status(self, engine, books, order):
        draft = engine.sync_record(order, as_draft=True)
        outcome = engine.apply_payment(order)

        assert outcome.success
        assert outcome.amount == 132.5
        assert books.invoices[draft.remote_invoice_id]["status"] == "paid"

        state = engine.store.get("1042")
        assert state.status == SyncStatus.DRAFT
        assert state.remote_invoice_status == InvoiceStatus.PAID

    def test_apply_payment_requires_sync(self, engine, order):
        outcome = engine.apply_payment(order)
        assert not outcome.success
        assert outcome.error_kind == "not_synced"

    def test_crypto_gateway_uses_order_number_as_reference(self, engine, books):
        order = make_order(payment_method="btcpay", transaction_id="x" * 80)
        result = engine.sync_record(order, as_draft=False, with_payment=True)
        assert books.payments[result.data["payment_id"]]["reference_number"] == "1042"


class TestIntegrity:
    """Stored invoices that vanished or drifted remotely."""

    def test_deleted_invoice_is_recreated(self, engine, books, order):
        first = engine.sync_record(order, as_draft=True)
        books.invoices.pop(first.remote_invoice_id)

        second = engine.sync_record(order, as_draft=True, force=True)

        assert second.success
        assert second.data["recreated_from"] == first.remote_invoice_id
        assert second.remote_invoice_id != first.remote_invoice_id
        assert second.remote_invoice_id in books.invoices

    def test_drift_on_editable_invoice_updates(self, engine, books, order):
        first = engine.sync_record(order, as_draft=True)
        changed = make_order(shipping_total=20.0, total=140.0)

        result = engine.sync_record(changed, as_draft=True, force=True)

        assert result.success
        assert result.data["invoice_updated"] is True
        assert books.invoices[first.remote_invoice_id]["total"] == 140.0
        assert len(books.api_calls("PUT", r"/invoices/\d+")) == 1

    def test_drift_on_paid_invoice_stops(self, engine, books, order):
        engine.sync_record(order, as_draft=False, with_payment=True)
        changed = make_order(shipping_total=30.0, total=150.0)

        result = engine.sync_record(changed, as_draft=False, force=True)

        assert not result.success
        assert result.error_kind == "conflict"
        assert result.data["drift"][0]["field"] == "total"
        assert engine.store.get("1042").status == SyncStatus.FAILED
        assert books.api_calls("PUT", r"/invoices/\d+") == []

    def test_drift_on_paid_invoice_skips_when_configured(self, engine, books, order):
        engine.orchestrator.settings.stop_on_locked_conflict = False
        engine.sync_record(order, as_draft=False, with_payment=True)
        changed = make_order(shipping_total=30.0, total=150.0)

        result = engine.sync_record(changed, as_draft=False, force=True, with_payment=True)

        assert result.success
        assert result.data["invoice_update_skipped"] is True
        assert result.status == SyncStatus.SYNCED
        assert books.api_calls("PUT", r"/invoices/\d+") == []
        assert len(books.payments) == 1

    def test_links_existing_invoice_by_reference(self, engine, books, order):
        existing = books.add_invoice(
            reference_number="1042",
            line_items=[{"name": "Trail Backpack", "quantity": 2, "rate": 60.0, "line_item_id": "1"}],
            total=132.5,
            balance=132.5,
        )

        result = engine.sync_record(order, as_draft=True)

        assert result.remote_invoice_id == existing["invoice_id"]
        assert result.data["linked_existing"] is True
        assert invoice_posts(books) == []

    def test_ignores_void_invoice_with_same_reference(self, engine, books, order):
        books.add_invoice(reference_number="1042", status="void")
        result = engine.sync_record(order, as_draft=True)
        assert len(invoice_posts(books)) == 1
        assert "linked_existing" not in result.data

    def test_deleted_contact_is_re_resolved(self, engine, books, order):
        first = engine.sync_record(order, as_draft=True)
        books.contacts.clear()

        second = engine.sync_record(order, as_draft=True, force=True)

        assert second.success
        assert second.remote_contact_id != first.remote_contact_id
        assert second.remote_contact_id in books.contacts


class TestFailures:
    """Failures are persisted and recoverable."""

    def test_network_failure_marks_failed(self, engine, books, order):
        books.fail_next("POST", "/invoices", status=503)
        result = engine.sync_record(order, as_draft=True)

        assert not result.success
        assert result.error_kind == "network"
        state = engine.store.get("1042")
        assert state.status == SyncStatus.FAILED
        assert "503" in state.last_error
        assert state.requested_draft is True

    def test_payment_failure_then_retry(self, engine, books, order):
        books.fail_next("POST", "/customerpayments", status=500)
        result = engine.sync_record(order, as_draft=False, with_payment=True)

        assert not result.success
        assert result.remote_invoice_id is not None
        state = engine.store.get("1042")
        assert state.status == SyncStatus.FAILED
        assert state.payment_pending is True
        assert state.last_error.startswith("Payment failed")

        retried = engine.orchestrator.retry_record(order)

        assert retried.success
        assert retried.remote_invoice_id == result.remote_invoice_id
        state = engine.store.get("1042")
        assert state.status == SyncStatus.SYNCED
        assert state.payment_pending is False
        assert state.last_error is None
        assert len(books.payments) == 1
        assert len(invoice_posts(books)) == 1

    def test_resync_applies_pending_payment(self, engine, books, order):
        books.fail_next("POST", "/customerpayments", status=503)
        engine.sync_record(order, as_draft=False, with_payment=True)

        result = engine.sync_record(order, as_draft=False, force=True)

        assert result.success
        assert result.data["payment_id"] in books.payments
        state = engine.store.get("1042")
        assert state.status == SyncStatus.SYNCED
        assert state.payment_pending is False
        assert state.remote_payment_id == result.data["payment_id"]

    def test_resync_keeps_failure_while_payment_pending(self, engine, books, order):
        books.fail_next("POST", "/customerpayments", status=503, times=2)
        engine.sync_record(order, as_draft=False, with_payment=True)

        result = engine.sync_record(order, as_draft=False, force=True)

        assert not result.success
        state = engine.store.get("1042")
        assert state.status == SyncStatus.FAILED
        assert state.payment_pending is True
        assert "503" in state.last_error
        assert books.payments == {}

    def test_lock_held_returns_pending(self, engine, books, order):
        with engine.orchestrator.locks.hold(order.id):
            result = engine.sync_record(order, as_draft=True)

        assert result.status == SyncStatus.PENDING
        assert result.error_kind == "locked"
        assert invoice_posts(books) == []
        assert engine.store.get("1042") is None


class TestRefunds:
    """Credit notes for local refunds."""

    @pytest.fixture
    def refunded(self):
        return make_order(status="refunded", refunds=[{"id": 7, "amount": -20.0, "reason": "Damaged strap"}])

    def test_credit_note_created_once(self, engine, books, refunded):
        engine.sync_record(refunded, as_draft=False, with_payment=True)

        first = engine.sync_refund(refunded, refunded.refunds[0])
        second = engine.sync_refund(refunded, refunded.refunds[0])

        assert first.success and second.success
        assert second.data["credit_note_id"] == first.data["credit_note_id"]
        assert len(books.credit_notes) == 1
        assert first.data["credit_note_applied"] is True

        state = engine.store.get("1042")
        assert state.credit_note_for("7").amount == 20.0
        assert state.credit_note_for("7").remote_refund_id is not None

    def test_refund_requires_sync(self, engine, refunded):
        result = engine.sync_refund(refunded, refunded.refunds[0])
        assert result.error_kind == "not_synced"

    def test_apply_failure_keeps_credit_note(self, engine, books, refunded):
        engine.sync_record(refunded, as_draft=True)
        books.fail_next("POST", r"/creditnotes/\d+/invoices", status=400)

        result = engine.sync_refund(refunded, refunded.refunds[0])

        assert result.success
        assert result.data["credit_note_applied"] is False
        state = engine.store.get("1042")
        assert state.unapplied_credit.credit_note_id == result.data["credit_note_id"]

    def test_credit_note_failure_marks_failed(self, engine, books, refunded):
        engine.sync_record(refunded, as_draft=True)
        books.fail_next("POST", "/creditnotes", status=500)

        result = engine.sync_refund(refunded, refunded.refunds[0])

        assert not result.success
        assert engine.store.get("1042").status == SyncStatus.FAILED

    def test_status_trigger_syncs_then_refunds(self, engine, books, refunded):
        result = engine.sync_for_status(refunded)

        assert result.success
        assert len(invoice_posts(books)) == 1
        assert len(books.credit_notes) == 1


class TestStatusTriggers:
    """Status-derived disposition."""

    def test_processing_syncs_draft(self, engine, books, order):
        result = engine.sync_for_status(order)
        assert result.status == SyncStatus.DRAFT
        assert books.payments == {}

    def test_completed_submits_and_pays(self, engine, books):
        result = engine.sync_for_status(make_order(status="completed"))
        assert result.status == SyncStatus.SYNCED
        assert len(books.payments) == 1

    def test_completed_unpaid_skips_payment(self, engine, books):
        result = engine.sync_for_status(make_order(status="completed", is_paid=False))
        assert result.status == SyncStatus.SYNCED
        assert books.payments == {}

    def test_draft_override_never_pays(self, engine, books):
        result = engine.sync_for_status(make_order(status="completed"), as_draft=True)
        assert result.status == SyncStatus.DRAFT
        assert books.payments == {}

    def test_unmapped_status_falls_back_to_draft(self, engine):
        result = engine.sync_for_status(make_order(status="on-hold"))
        assert result.status == SyncStatus.DRAFT
