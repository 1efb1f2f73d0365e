"""
Sync engine facade.

Wires every component from ``Settings`` and exposes the operations that
webhook handlers, the CLI and cron jobs call.
"""

import threading
import time
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable

import httpx
import structlog

from books_sync.bulk import BatchResult, BulkRunner
from books_sync.client import BooksApiClient
from books_sync.config import Settings
from books_sync.contacts import ContactService
from books_sync.credit_notes import RefundService
from books_sync.crypto import CredentialCipher
from books_sync.exceptions import ConfigurationError
from books_sync.invoices import InvoiceService
from books_sync.locks import RecordLockRegistry
from books_sync.mapping import StaticFieldMapper
from books_sync.models import (
    LocalOrder,
    LocalRefund,
    PaymentOutcome,
    ReconciliationReport,
    SyncResult,
)
from books_sync.orchestrator import SyncOrchestrator
from books_sync.payments import PaymentService
from books_sync.rate_limiter import FixedWindowRateLimiter
from books_sync.reconciliation import (
    ACTION_APPLY_PAYMENT,
    ACTION_RESYNC,
    ACTION_REVIEW,
    ACTION_SYNC_REFUNDS,
    ReconciliationEngine,
)
from books_sync.retry import RetryRunSummary, RetryScheduler
from books_sync.sources import OrderSource
from books_sync.store import RecordStateStore, ReportRepository
from books_sync.token_manager import CredentialStore, TokenManager
from books_sync.triggers import TriggerPolicy

logger = structlog.get_logger(__name__)

STATE_FILE = "sync_state.json"
REPORTS_FILE = "reports.json"
CREDENTIALS_FILE = "credentials.json"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:
    """
    Accounting sync engine for one organization.

    Example:
        settings = load_settings()
        engine = SyncEngine(settings, JsonOrderSource("orders.json"))
        engine.connect(client_id, client_secret, refresh_token)

        with engine:
            result = engine.sync_for_status(order)
            report = engine.generate_report(date(2024, 1, 1), date(2024, 1, 31))
    """

    def __init__(
        self,
        settings: Settings,
        source: OrderSource,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = _utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        bulk_delay_seconds: float = 0.1,
    ):
        """
        Initialize the engine.

        Args:
            settings: Loaded configuration
            source: Read access to local orders
            transport: Custom httpx transport for every outbound call
            clock: Wall clock for state timestamps and token expiry
            monotonic: Clock for the rate limiter window
            sleep: Sleep used by the rate limiter and bulk runs
            bulk_delay_seconds: Pause between records in a bulk run

        Raises:
            ConfigurationError: Missing organization id or encryption key
        """
        if not settings.api.organization_id:
            raise ConfigurationError("organization_id is not configured")
        if not settings.encryption_key:
            raise ConfigurationError("encryption_key is not configured")

        self.settings = settings
        self.source = source
        api = settings.api

        self._token_http = (
            httpx.Client(transport=transport, timeout=api.timeout_seconds)
            if transport is not None else None
        )
        self.credentials = CredentialStore(
            CredentialCipher(settings.encryption_key),
            settings.state_path(CREDENTIALS_FILE),
        )
        self.token_manager = TokenManager(
            self.credentials,
            token_url=api.token_url,
            http_client=self._token_http,
            timeout=api.timeout_seconds,
            clock=clock,
        )
        self.rate_limiter = FixedWindowRateLimiter(
            limit=api.requests_per_minute,
            window_seconds=api.window_seconds,
            blocking=api.rate_limit_blocking,
            max_wait=api.max_rate_wait_seconds,
            clock=monotonic,
            sleep=sleep,
        )
        self.client = BooksApiClient(
            organization_id=api.organization_id,
            token_manager=self.token_manager,
            rate_limiter=self.rate_limiter,
            base_url=api.base_url,
            auth_scheme=api.auth_scheme,
            timeout=api.timeout_seconds,
            transport=transport,
        )

        self.store = RecordStateStore(settings.state_path(STATE_FILE), clock=clock)
        self.reports = ReportRepository(settings.state_path(REPORTS_FILE), clock=clock)

        sync = settings.sync
        mapper = StaticFieldMapper(settings.mapping)
        self.contacts = ContactService(self.client, match_key=sync.contact_match_key)
        self.policy = TriggerPolicy(settings.triggers)
        self.orchestrator = SyncOrchestrator(
            store=self.store,
            contacts=self.contacts,
            invoices=InvoiceService(self.client, mapper, tolerance=sync.integrity_tolerance),
            payments=PaymentService(
                self.client,
                mapper,
                apply_bank_fees=sync.apply_bank_fees,
                deposit_account_id=sync.deposit_account_id,
            ),
            refunds=RefundService(self.client, mapper, create_cash_refund=sync.create_cash_refund),
            settings=sync,
            policy=self.policy,
            locks=RecordLockRegistry(),
            clock=clock,
        )
        self.scheduler = RetryScheduler(
            self.orchestrator,
            self.store,
            source,
            settings=settings.retry,
            health_check=self.client.health_check,
            clock=clock,
        )
        self.bulk = BulkRunner(self.orchestrator, source, delay_seconds=bulk_delay_seconds, sleep=sleep)
        self.reconciler = ReconciliationEngine(
            self.client,
            self.store,
            source,
            self.reports,
            settings=settings.reconciliation,
            triggers=settings.triggers,
            clock=clock,
        )

        self._log = logger.bind(organization_id=api.organization_id)

    def __enter__(self) -> "SyncEngine":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        self.client.close()
        if self._token_http is not None:
            self._token_http.close()

    def connect(self, client_id: str, client_secret: str, refresh_token: str) -> None:
        """Store OAuth credentials (encrypted) for the accounting service."""
        if not (client_id and client_secret and refresh_token):
            raise ConfigurationError("client_id, client_secret and refresh_token are all required")
        self.token_manager.save_credentials(client_id, client_secret, refresh_token)

    @property
    def is_connected(self) -> bool:
        return self.token_manager.has_credentials()

    # -------------------------------------------------------------------------
    # Sync operations
    # -------------------------------------------------------------------------

    def _require_order(self, record_id: str) -> LocalOrder | None:
        order = self.source.get(str(record_id))
        if order is None:
            self._log.warning("Local record not found", record_id=record_id)
        return order

    def sync_record(
        self,
        order: LocalOrder,
        as_draft: bool = False,
        force: bool = False,
        with_payment: bool = False,
    ) -> SyncResult:
        return self.orchestrator.sync_record(order, as_draft=as_draft, force=force, with_payment=with_payment)

    def sync_for_status(self, order: LocalOrder, as_draft: bool | None = None) -> SyncResult:
        return self.orchestrator.sync_for_status(order, as_draft=as_draft)

    def apply_payment(self, order: LocalOrder, force: bool = False) -> PaymentOutcome:
        return self.orchestrator.apply_payment(order, force=force)

    def sync_refund(self, order: LocalOrder, refund: LocalRefund) -> SyncResult:
        return self.orchestrator.sync_refund(order, refund)

    def sync_batch(
        self,
        record_ids: Iterable[str] | None = None,
        date_range: tuple[date, date] | None = None,
        as_draft: bool | None = None,
        cancel_event: threading.Event | None = None,
        on_progress: Callable[[str, SyncResult], None] | None = None,
    ) -> BatchResult:
        return self.bulk.sync_batch(
            record_ids=record_ids,
            date_range=date_range,
            as_draft=as_draft,
            cancel_event=cancel_event,
            on_progress=on_progress,
        )

    def run_retries(self) -> RetryRunSummary:
        return self.scheduler.run()

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def generate_report(self, period_start: date, period_end: date) -> ReconciliationReport:
        return self.reconciler.generate_report(period_start, period_end)

    def sweep_stale_reports(self) -> int:
        swept = self.reconciler.sweep_stale_reports()
        removed = self.reconciler.cleanup_old_reports()
        if swept or removed:
            self._log.info("Swept reports", stale=swept, removed=removed)
        return swept

    def resolve_discrepancy(self, report_id: str, record_id: str, action: str) -> SyncResult:
        """
        Run one of the actions a report attached to a record's discrepancy.

        Raises:
            ValueError: Unknown report, or the action was not offered for
                this record
        """
        report = self.reports.get(report_id)
        if report is None:
            raise ValueError(f"Report {report_id} not found")

        offered = {
            a for d in report.discrepancies if d.record_id == str(record_id) for a in d.actions
        }
        if action not in offered:
            raise ValueError(f"Action {action!r} is not available for record {record_id}")

        if action == ACTION_REVIEW:
            return SyncResult.failure("Requires manual review", error_kind="review")

        order = self._require_order(record_id)
        if order is None:
            return SyncResult.failure(f"Record {record_id} not found", error_kind="not_found")

        log = self._log.bind(report_id=report_id, record_id=record_id, action=action)
        log.info("Resolving discrepancy")

        if action == ACTION_RESYNC:
            plan = self.policy.plan(order)
            return self.orchestrator.sync_record(
                order,
                as_draft=plan.as_draft,
                force=True,
                with_payment=plan.with_payment,
            )
        if action == ACTION_APPLY_PAYMENT:
            outcome = self.orchestrator.apply_payment(order)
            state = self.store.get(order.id)
            if not outcome.success or state is None:
                return SyncResult.failure(
                    outcome.error or "Payment failed",
                    error_kind=outcome.error_kind,
                    remote_invoice_id=state.remote_invoice_id if state else None,
                )
            return SyncResult.ok(
                state.remote_invoice_id,
                remote_contact_id=state.remote_contact_id,
                status=state.status,
                data={"payment_id": outcome.payment_id, "already_recorded": outcome.already_recorded},
            )
        if action == ACTION_SYNC_REFUNDS:
            return self.orchestrator.sync_outstanding_refunds(order)

        raise ValueError(f"Unknown action {action!r}")

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get engine statistics for monitoring."""
        latest = self.reports.latest()
        return {
            "organization_id": self.settings.api.organization_id,
            "records": self.store.count_by_status(),
            "client": self.client.get_stats(),
            "token": self.token_manager.get_stats(),
            "contact_cache": self.contacts.cache.get_stats(),
            "latest_report": {
                "id": latest.id,
                "status": latest.status.value,
                "discrepancies": len(latest.discrepancies),
            } if latest else None,
        }

    def health_check(self) -> dict[str, Any]:
        """Check connectivity and return health status."""
        if not self.is_connected:
            return {"status": "not_configured", "message": "Run `books-sync setup` first"}
        return self.client.health_check()
