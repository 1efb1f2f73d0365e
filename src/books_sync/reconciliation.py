"""
Periodic comparison of local records against remote invoices.

Per-record sync cannot see changes made on the remote side (manual edits,
deletions, invoices created by hand). Reconciliation pulls both sides for
a period and reports every difference, each with the action that would
resolve it.
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Callable

import structlog

from books_sync.client import BooksApiClient
from books_sync.config import ReconciliationSettings, TriggerSettings
from books_sync.exceptions import NotFoundError, SyncError
from books_sync.models import (
    Discrepancy,
    DiscrepancyType,
    InvoiceStatus,
    LocalOrder,
    ReconciliationReport,
    ReportStatus,
    RemoteInvoice,
)
from books_sync.sources import OrderSource
from books_sync.store import RecordStateStore, ReportRepository

logger = structlog.get_logger(__name__)

ACTION_RESYNC = "resync"
ACTION_APPLY_PAYMENT = "apply_payment"
ACTION_SYNC_REFUNDS = "sync_refunds"
ACTION_REVIEW = "review"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReconciliationEngine:
    """
    Builds reconciliation reports.

    Example:
        engine = ReconciliationEngine(client, store, source, reports)
        report = engine.generate_report(date(2024, 1, 1), date(2024, 1, 31))

        for d in report.discrepancies:
            print(d.type.value, d.message, d.actions)
    """

    def __init__(
        self,
        client: BooksApiClient,
        store: RecordStateStore,
        source: OrderSource,
        reports: ReportRepository,
        settings: ReconciliationSettings | None = None,
        triggers: TriggerSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.store = store
        self.source = source
        self.reports = reports
        self.settings = settings or ReconciliationSettings()
        self.triggers = triggers or TriggerSettings()
        self._clock = clock

    @property
    def tolerance(self) -> float:
        return self.settings.amount_tolerance

    def generate_report(self, period_start: date, period_end: date) -> ReconciliationReport:
        """
        Compare local and remote records for [period_start, period_end].

        The report is stored as ``running`` before any remote call, so a
        crash mid-run leaves a row the stale-report sweep can reclaim.
        """
        if period_start > period_end:
            raise ValueError("period_start must not be after period_end")

        report = ReconciliationReport(
            id=uuid.uuid4().hex,
            period_start=period_start,
            period_end=period_end,
            generated_at=self._clock(),
            status=ReportStatus.RUNNING,
        )
        self.reports.save(report)

        log = logger.bind(report_id=report.id, period=f"{period_start}..{period_end}")
        log.info("Starting reconciliation")

        try:
            invoices = list(self.client.iter_invoices(period_start, period_end))
            orders = self._local_orders(period_start, period_end)
            self._compare(report, orders, invoices)
        except SyncError as e:
            report.status = ReportStatus.FAILED
            report.error = str(e)
            self.reports.save(report)
            log.error("Reconciliation failed", error=str(e), error_kind=e.kind)
            return report

        report.status = ReportStatus.COMPLETED
        self.reports.save(report)
        self._notify(report)
        return report

    def _local_orders(self, start: date, end: date) -> list[LocalOrder]:
        """Orders created in the period, plus any with stored sync state for it."""
        orders = {o.id: o for o in self.source.find_in_date_range(start, end)}
        for state in self.store.find_in_date_range(start, end):
            if state.record_id not in orders:
                order = self.source.get(state.record_id)
                if order is not None:
                    orders[order.id] = order
        return list(orders.values())

    def _should_have_synced(self, order: LocalOrder) -> bool:
        statuses = {
            s.lower() for s in (
                self.triggers.sync_draft,
                self.triggers.sync_submit,
                self.triggers.create_credit_note,
            ) if s
        }
        return order.status in statuses

    def _compare(
        self,
        report: ReconciliationReport,
        orders: list[LocalOrder],
        invoices: list[RemoteInvoice],
    ) -> None:
        summary = report.summary
        summary.total_local_records = len(orders)
        summary.total_remote_invoices = len(invoices)

        by_reference = {i.reference_number: i for i in invoices if i.reference_number}
        by_id = {i.invoice_id: i for i in invoices}
        matched_ids: set[str] = set()
        local_total = 0.0
        remote_total = 0.0

        for order in orders:
            state = self.store.get(order.id)
            stored_id = state.remote_invoice_id if state else None

            invoice = by_reference.get(order.number)
            if invoice is None and stored_id:
                invoice = by_id.get(stored_id) or self._fetch(stored_id)

            if invoice is None:
                if stored_id or self._should_have_synced(order):
                    summary.missing_in_remote += 1
                    report.add_discrepancy(Discrepancy(
                        type=DiscrepancyType.MISSING_IN_REMOTE,
                        record_id=order.id,
                        order_number=order.number,
                        invoice_id=stored_id,
                        local_total=order.total,
                        local_status=order.status,
                        message=f"Order #{order.number} has no invoice in the accounting service",
                        actions=[ACTION_RESYNC],
                    ))
                continue

            matched_ids.add(invoice.invoice_id)
            local_total += order.total
            remote_total += invoice.total

            delta = round(order.total - invoice.total, 2)
            if abs(delta) > self.tolerance:
                summary.amount_mismatches += 1
                breakdown = self._breakdown(order, invoice)
                report.add_discrepancy(Discrepancy(
                    type=DiscrepancyType.AMOUNT_MISMATCH,
                    record_id=order.id,
                    order_number=order.number,
                    invoice_id=invoice.invoice_id,
                    invoice_number=invoice.invoice_number,
                    local_total=order.total,
                    remote_total=invoice.total,
                    delta=delta,
                    breakdown=breakdown,
                    message=self._mismatch_message(order, invoice, delta, breakdown),
                    actions=[ACTION_RESYNC] if not invoice.is_locked else [ACTION_REVIEW],
                ))
            else:
                summary.matched_count += 1

            self._check_status(report, order, invoice)
            self._check_payment(report, order, invoice)
            self._check_refunds(report, order, invoice)

        for invoice in invoices:
            if invoice.invoice_id in matched_ids or not invoice.reference_number:
                continue
            summary.missing_locally += 1
            report.add_discrepancy(Discrepancy(
                type=DiscrepancyType.MISSING_LOCALLY,
                invoice_id=invoice.invoice_id,
                invoice_number=invoice.invoice_number,
                order_number=invoice.reference_number,
                remote_total=invoice.total,
                remote_status=invoice.status,
                message=f"Invoice {invoice.invoice_number or invoice.invoice_id} has no matching local order",
                actions=[ACTION_REVIEW],
            ))

        summary.local_total_amount = round(local_total, 2)
        summary.remote_total_amount = round(remote_total, 2)
        summary.amount_difference = round(abs(local_total - remote_total), 2)

    def _fetch(self, invoice_id: str) -> RemoteInvoice | None:
        try:
            return self.client.get_invoice(invoice_id)
        except NotFoundError:
            return None

    def _breakdown(self, order: LocalOrder, invoice: RemoteInvoice) -> dict[str, dict[str, float]]:
        """Per-component differences that explain an amount mismatch."""
        components = {
            "subtotal": (order.items_subtotal, invoice.sub_total),
            "shipping": (order.shipping_total, invoice.shipping_charge),
            "discount": (order.discount_total, invoice.discount),
            "tax": (order.tax_total, invoice.tax_total),
            "fees_adjustment": (order.fee_total, invoice.adjustment),
        }
        breakdown = {}
        for name, (local, remote) in components.items():
            if abs(local - remote) > self.tolerance:
                breakdown[name] = {
                    "local": local,
                    "remote": remote,
                    "diff": round(local - remote, 2),
                }
        return breakdown

    @staticmethod
    def _mismatch_message(
        order: LocalOrder,
        invoice: RemoteInvoice,
        delta: float,
        breakdown: dict[str, dict[str, float]],
    ) -> str:
        message = (
            f"Total mismatch: local {order.total:.2f} vs remote {invoice.total:.2f} "
            f"(diff: {delta:+.2f})"
        )
        if breakdown:
            details = "; ".join(
                f"{name.replace('_', ' ').capitalize()}: local {v['local']:.2f} vs remote {v['remote']:.2f}"
                for name, v in breakdown.items()
            )
            message += f" | {details}"
        return message

    def _check_status(self, report: ReconciliationReport, order: LocalOrder, invoice: RemoteInvoice) -> None:
        """A completed order should have a settled invoice."""
        if order.status != self.triggers.sync_submit.lower():
            return
        lifecycle = invoice.lifecycle
        if lifecycle is not None and lifecycle.is_settled:
            return

        report.summary.status_mismatches += 1
        report.add_discrepancy(Discrepancy(
            type=DiscrepancyType.STATUS_MISMATCH,
            record_id=order.id,
            order_number=order.number,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            local_status=order.status,
            remote_status=invoice.status,
            message=f"Invoice is {invoice.status} but order is {order.status}",
            actions=[ACTION_APPLY_PAYMENT] if order.amount_paid > 0 else [ACTION_REVIEW],
        ))

    def _check_payment(self, report: ReconciliationReport, order: LocalOrder, invoice: RemoteInvoice) -> None:
        paid = order.amount_paid
        if paid <= 0 or invoice.lifecycle == InvoiceStatus.VOID:
            return
        if abs(paid - invoice.payment_made) <= self.tolerance:
            return

        report.summary.payment_mismatches += 1
        report.add_discrepancy(Discrepancy(
            type=DiscrepancyType.PAYMENT_MISMATCH,
            record_id=order.id,
            order_number=order.number,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            local_total=paid,
            remote_total=invoice.payment_made,
            delta=round(paid - invoice.payment_made, 2),
            message=f"Payment mismatch: local received {paid:.2f} vs remote received {invoice.payment_made:.2f}",
            actions=[ACTION_APPLY_PAYMENT],
        ))

    def _check_refunds(self, report: ReconciliationReport, order: LocalOrder, invoice: RemoteInvoice) -> None:
        refunded = order.refunded_total
        if refunded <= self.tolerance or invoice.credits_applied >= self.tolerance:
            return

        report.summary.refund_mismatches += 1
        report.add_discrepancy(Discrepancy(
            type=DiscrepancyType.REFUND_MISMATCH,
            record_id=order.id,
            order_number=order.number,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            local_total=refunded,
            remote_total=invoice.credits_applied,
            message=f"Refund mismatch: local refunded {refunded:.2f} but remote shows {invoice.credits_applied:.2f} credits",
            actions=[ACTION_SYNC_REFUNDS],
        ))

    def _notify(self, report: ReconciliationReport) -> None:
        summary = report.summary
        if report.has_discrepancies:
            logger.warning(
                "Reconciliation found discrepancies",
                report_id=report.id,
                discrepancies=len(report.discrepancies),
                missing_in_remote=summary.missing_in_remote,
                missing_locally=summary.missing_locally,
                amount_mismatches=summary.amount_mismatches,
                notify=True,
            )
        else:
            logger.info(
                "Reconciliation complete, no discrepancies",
                report_id=report.id,
                matched=summary.matched_count,
                notify=not self.settings.notify_on_discrepancy_only,
            )

    def sweep_stale_reports(self) -> int:
        """Fail reports left ``running`` past the configured timeout."""
        return self.reports.mark_stale_reports_failed(
            timedelta(minutes=self.settings.stale_report_minutes)
        )

    def cleanup_old_reports(self) -> int:
        return self.reports.delete_older_than(self.settings.retention_days)
