"""
Tests for reconciliation reports and discrepancy resolution.
"""

from datetime import date, timedelta

import pytest
from structlog.testing import capture_logs

from books_sync.models import DiscrepancyType, ReconciliationReport, ReportStatus

from conftest import make_order


@pytest.fixture
def order():
    # Unpaid so a draft invoice is a clean match
    return make_order(is_paid=False)


def of_type(report, kind):
    return [d for d in report.discrepancies if d.type == kind]


class TestMatching:
    """Amount comparison within tolerance."""

    def test_clean_period(self, engine, order, march):
        engine.sync_record(order, as_draft=True)

        report = engine.generate_report(*march)

        assert report.status == ReportStatus.COMPLETED
        assert report.is_healthy
        assert report.summary.matched_count == 1
        assert report.summary.local_total_amount == 132.5
        assert report.summary.remote_total_amount == 132.5
        assert engine.reports.get(report.id).status == ReportStatus.COMPLETED

    def test_difference_within_tolerance_matches(self, engine, books, order, march):
        result = engine.sync_record(order, as_draft=True)
        books.invoices[result.remote_invoice_id]["total"] = 132.53

        report = engine.generate_report(*march)

        assert report.discrepancies == []
        assert report.summary.amount_difference == 0.03

    def test_difference_over_tolerance_is_mismatch(self, engine, books, order, march):
        result = engine.sync_record(order, as_draft=True)
        books.invoices[result.remote_invoice_id]["total"] = 132.60

        report = engine.generate_report(*march)

        [mismatch] = of_type(report, DiscrepancyType.AMOUNT_MISMATCH)
        assert mismatch.delta == -0.10
        assert mismatch.actions == ["resync"]
        assert report.summary.amount_mismatches == 1

    def test_mismatch_breakdown(self, engine, books, order, march):
        result = engine.sync_record(order, as_draft=True)
        books.invoices[result.remote_invoice_id].update(shipping_charge=20.0, total=140.0)

        [mismatch] = of_type(engine.generate_report(*march), DiscrepancyType.AMOUNT_MISMATCH)

        assert mismatch.breakdown == {"shipping": {"local": 12.5, "remote": 20.0, "diff": -7.5}}
        assert "Shipping: local 12.50 vs remote 20.00" in mismatch.message

    def test_locked_invoice_mismatch_needs_review(self, engine, books, order, march):
        result = engine.sync_record(order, as_draft=True)
        books.invoices[result.remote_invoice_id].update(status="paid", total=100.0)

        [mismatch] = of_type(engine.generate_report(*march), DiscrepancyType.AMOUNT_MISMATCH)
        assert mismatch.actions == ["review"]

    def test_rejects_inverted_period(self, engine):
        with pytest.raises(ValueError):
            engine.generate_report(date(2024, 3, 31), date(2024, 3, 1))


class TestMissing:
    """Records present on only one side."""

    def test_unsynced_order_missing_in_remote(self, engine, order, march):
        report = engine.generate_report(*march)

        [missing] = of_type(report, DiscrepancyType.MISSING_IN_REMOTE)
        assert missing.record_id == "1042"
        assert missing.invoice_id is None
        assert missing.actions == ["resync"]

    def test_untriggered_status_not_expected_remotely(self, engine, source, march):
        source.add(make_order(status="on-hold", is_paid=False))
        report = engine.generate_report(*march)
        assert report.discrepancies == []

    def test_deleted_invoice_missing_in_remote(self, engine, books, order, march):
        result = engine.sync_record(order, as_draft=True)
        books.invoices.pop(result.remote_invoice_id)

        [missing] = of_type(engine.generate_report(*march), DiscrepancyType.MISSING_IN_REMOTE)
        assert missing.invoice_id == result.remote_invoice_id

    def test_orphan_invoice_missing_locally(self, engine, books, order, march):
        engine.sync_record(order, as_draft=True)
        orphan = books.add_invoice(reference_number="2001", date="2024-03-05", total=50.0)
        books.add_invoice(date="2024-03-06")

        report = engine.generate_report(*march)

        [missing] = of_type(report, DiscrepancyType.MISSING_LOCALLY)
        assert missing.invoice_id == orphan["invoice_id"]
        assert missing.order_number == "2001"
        assert missing.actions == ["review"]
        assert report.summary.total_remote_invoices == 3

    def test_invoices_outside_period_ignored(self, engine, books, order, march):
        engine.sync_record(order, as_draft=True)
        books.add_invoice(reference_number="3001", date="2024-04-01")
        assert engine.generate_report(*march).is_healthy


class TestStatusPaymentRefund:
    """Lifecycle, payment and refund drift."""

    def test_completed_order_with_unpaid_invoice(self, engine, source, march):
        completed = make_order(id="1043", number="1043", status="completed")
        source.add(completed)
        engine.sync_record(completed, as_draft=True)

        report = engine.generate_report(*march)

        [status] = [d for d in of_type(report, DiscrepancyType.STATUS_MISMATCH) if d.record_id == "1043"]
        assert status.remote_status == "draft"
        assert status.actions == ["apply_payment"]
        [payment] = of_type(report, DiscrepancyType.PAYMENT_MISMATCH)
        assert payment.local_total == 132.5
        assert payment.remote_total == 0.0

    def test_completed_unpaid_order_needs_review(self, engine, source, march):
        completed = make_order(id="1043", number="1043", status="completed", is_paid=False)
        source.add(completed)
        engine.sync_record(completed, as_draft=True)

        report = engine.generate_report(*march)

        [status] = [d for d in of_type(report, DiscrepancyType.STATUS_MISMATCH) if d.record_id == "1043"]
        assert status.actions == ["review"]

    def test_refund_without_credit_note(self, engine, source, march):
        refunded = make_order(status="refunded", is_paid=False, refunds=[{"id": 7, "amount": 20.0}])
        source.add(refunded)
        engine.sync_record(refunded, as_draft=True)

        [refund] = of_type(engine.generate_report(*march), DiscrepancyType.REFUND_MISMATCH)
        assert refund.local_total == 20.0
        assert refund.actions == ["sync_refunds"]


class TestResolution:
    """Resolving discrepancies through the engine."""

    def test_apply_payment_resolves_status_and_payment(self, engine, books, source, march):
        completed = make_order(id="1043", number="1043", status="completed")
        source.add(completed)
        engine.sync_record(completed, as_draft=True)
        report = engine.generate_report(*march)

        result = engine.resolve_discrepancy(report.id, "1043", "apply_payment")

        assert result.success
        assert result.data["payment_id"] in books.payments
        follow_up = engine.generate_report(*march)
        assert [d for d in follow_up.discrepancies if d.record_id == "1043"] == []

    def test_resync_resolves_amount_mismatch(self, engine, books, order, march):
        result = engine.sync_record(order, as_draft=True)
        books.invoices[result.remote_invoice_id].update(shipping_charge=20.0, total=140.0)
        report = engine.generate_report(*march)

        resolved = engine.resolve_discrepancy(report.id, "1042", "resync")

        assert resolved.success
        assert books.invoices[result.remote_invoice_id]["total"] == 132.5
        assert engine.generate_report(*march).is_healthy

    def test_sync_refunds_resolves_refund_mismatch(self, engine, books, source, march):
        refunded = make_order(status="refunded", is_paid=False, refunds=[{"id": 7, "amount": 20.0}])
        source.add(refunded)
        engine.sync_record(refunded, as_draft=True)
        report = engine.generate_report(*march)

        resolved = engine.resolve_discrepancy(report.id, "1042", "sync_refunds")

        assert resolved.success
        assert len(books.credit_notes) == 1
        assert of_type(engine.generate_report(*march), DiscrepancyType.REFUND_MISMATCH) == []

    def test_review_is_not_automated(self, engine, books, order, march):
        result = engine.sync_record(order, as_draft=True)
        books.invoices[result.remote_invoice_id].update(status="void", total=0.0)
        report = engine.generate_report(*march)

        resolved = engine.resolve_discrepancy(report.id, "1042", "review")

        assert not resolved.success
        assert resolved.error_kind == "review"

    def test_action_must_be_offered(self, engine, order, march):
        report = engine.generate_report(*march)
        with pytest.raises(ValueError):
            engine.resolve_discrepancy(report.id, "1042", "apply_payment")

    def test_unknown_report(self, engine):
        with pytest.raises(ValueError):
            engine.resolve_discrepancy("nope", "1042", "resync")


class TestReportLifecycle:
    """Failure, sweeping and notification."""

    def test_remote_failure_marks_report_failed(self, engine, books, march):
        books.fail_next("GET", "/invoices", status=503)

        report = engine.generate_report(*march)

        assert report.status == ReportStatus.FAILED
        assert "503" in report.error
        assert engine.reports.get(report.id).status == ReportStatus.FAILED

    def test_sweep_stale_reports(self, engine, clock):
        engine.reports.save(ReconciliationReport(
            id="stuck",
            period_start=date(2024, 2, 1),
            period_end=date(2024, 2, 29),
            generated_at=clock.now - timedelta(minutes=45),
            status=ReportStatus.RUNNING,
        ))

        assert engine.sweep_stale_reports() == 1
        assert engine.reports.get("stuck").status == ReportStatus.FAILED

    def test_discrepancies_are_notified(self, engine, march):
        with capture_logs() as logs:
            engine.generate_report(*march)

        [entry] = [e for e in logs if e["event"] == "Reconciliation found discrepancies"]
        assert entry["notify"] is True
        assert entry["log_level"] == "warning"
        assert entry["missing_in_remote"] == 1

    def test_clean_report_not_notified_by_default(self, engine, order, march):
        engine.sync_record(order, as_draft=True)
        with capture_logs() as logs:
            engine.generate_report(*march)

        [entry] = [e for e in logs if e["event"] == "Reconciliation complete, no discrepancies"]
        assert entry["notify"] is False

    def test_stats_include_latest_report(self, engine, march):
        report = engine.generate_report(*march)
        assert engine.get_stats()["latest_report"] == {
            "id": report.id,
            "status": "completed",
            "discrepancies": 1,
        }
