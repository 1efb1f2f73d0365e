"""
Pydantic models for local records, remote payloads, and sync state.

Local records (orders, refunds) are read-only inputs owned by the host
system. Remote models parse the accounting API's JSON. SyncRecordState is
the durable per-record projection; SyncResult is the transient outcome of
one orchestration attempt.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class SyncStatus(str, Enum):
    """Per-record sync status."""

    PENDING = "pending"
    DRAFT = "draft"
    SYNCED = "synced"
    FAILED = "failed"

    @property
    def is_success(self) -> bool:
        return self in (SyncStatus.DRAFT, SyncStatus.SYNCED)

    @property
    def label(self) -> str:
        return self.value.capitalize()


class InvoiceStatus(str, Enum):
    """Remote invoice lifecycle. Closed set of tags."""

    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    PARTIALLY_PAID = "partially_paid"
    OVERDUE = "overdue"
    VOID = "void"

    @classmethod
    def parse(cls, value: Any) -> "InvoiceStatus | None":
        """Parse a remote status string; unknown or empty values yield None."""
        if value is None:
            return None
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None

    @property
    def is_locked(self) -> bool:
        """Locked invoices forbid edits."""
        if self in (InvoiceStatus.PAID, InvoiceStatus.VOID):
            return True
        if self in (
            InvoiceStatus.DRAFT,
            InvoiceStatus.SENT,
            InvoiceStatus.PARTIALLY_PAID,
            InvoiceStatus.OVERDUE,
        ):
            return False
        raise ValueError(f"Unhandled invoice status: {self}")

    @property
    def is_settled(self) -> bool:
        """Payment has been received (fully or in part)."""
        if self in (InvoiceStatus.PAID, InvoiceStatus.PARTIALLY_PAID):
            return True
        if self in (
            InvoiceStatus.DRAFT,
            InvoiceStatus.SENT,
            InvoiceStatus.OVERDUE,
            InvoiceStatus.VOID,
        ):
            return False
        raise ValueError(f"Unhandled invoice status: {self}")


# ---------------------------------------------------------------------------
# Local records
# ---------------------------------------------------------------------------


class LineItem(BaseModel):
    """Line item on a local order or refund."""

    name: str
    sku: str | None = None
    description: str | None = None
    quantity: float = 1.0
    rate: float = 0.0
    tax: float = 0.0

    @property
    def total(self) -> float:
        return round(self.quantity * self.rate, 2)


class LocalRefund(BaseModel):
    """A refund recorded against a local order."""

    id: str
    amount: float
    reason: str | None = None
    created_at: datetime | None = None
    line_items: list[LineItem] = Field(default_factory=list)
    shipping_total: float = 0.0

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)

    @field_validator("amount", mode="before")
    @classmethod
    def absolute_amount(cls, v: Any) -> float:
        """Host systems store refunds as negative totals."""
        return abs(float(v))


class LocalOrder(BaseModel):
    """The local transactional record being mirrored remotely."""

    id: str
    number: str
    status: str
    currency: str = "USD"
    created_at: datetime

    billing_email: str | None = None
    billing_first_name: str | None = None
    billing_last_name: str | None = None
    billing_company: str | None = None
    billing_phone: str | None = None

    line_items: list[LineItem] = Field(default_factory=list)
    subtotal: float | None = None
    shipping_total: float = 0.0
    discount_total: float = 0.0
    tax_total: float = 0.0
    fee_total: float = 0.0
    total: float

    is_paid: bool = False
    paid_amount: float | None = None
    payment_method: str | None = None
    transaction_id: str | None = None

    # Gateway settlement data (fee may be in a different currency)
    gateway_fee: float | None = None
    gateway_fee_currency: str | None = None
    gateway_net: float | None = None

    meta: dict[str, Any] = Field(default_factory=dict)
    refunds: list[LocalRefund] = Field(default_factory=list)

    @field_validator("id", "number", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> str:
        return str(v)

    @field_validator("status", mode="before")
    @classmethod
    def normalize_status(cls, v: Any) -> str:
        """Strip host prefixes like ``wc-processing``."""
        status = str(v).strip().lower()
        if status.startswith("wc-"):
            status = status[3:]
        return status

    @property
    def billing_name(self) -> str:
        parts = [p for p in [self.billing_first_name, self.billing_last_name] if p]
        if parts:
            return " ".join(parts)
        return self.billing_company or self.billing_email or f"Order #{self.number}"

    @property
    def items_subtotal(self) -> float:
        if self.subtotal is not None:
            return self.subtotal
        return round(sum(item.total for item in self.line_items), 2)

    @property
    def amount_paid(self) -> float:
        """Amount actually received for this order."""
        if self.paid_amount is not None:
            return self.paid_amount
        return self.total if self.is_paid else 0.0

    @property
    def refunded_total(self) -> float:
        return round(sum(r.amount for r in self.refunds), 2)

    def get_refund(self, refund_id: str) -> LocalRefund | None:
        for refund in self.refunds:
            if refund.id == str(refund_id):
                return refund
        return None


# ---------------------------------------------------------------------------
# Remote payloads
# ---------------------------------------------------------------------------


class RemoteContact(BaseModel):
    """Accounting-side contact (customer)."""

    model_config = ConfigDict(extra="ignore")

    contact_id: str
    contact_name: str | None = None
    company_name: str | None = None
    email: str | None = None
    currency_code: str | None = None
    status: str | None = None

    @field_validator("contact_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> str:
        return str(v)


class RemoteInvoice(BaseModel):
    """Accounting-side invoice."""

    model_config = ConfigDict(extra="ignore")

    invoice_id: str
    invoice_number: str | None = None
    reference_number: str | None = None
    customer_id: str | None = None
    status: str | None = None
    date: str | None = None
    currency_code: str | None = None
    total: float = 0.0
    sub_total: float = 0.0
    tax_total: float = 0.0
    shipping_charge: float = 0.0
    discount: float = 0.0
    adjustment: float = 0.0
    balance: float | None = None
    payment_made: float = 0.0
    credits_applied: float = 0.0
    line_items: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("invoice_id", "customer_id", mode="before")
    @classmethod
    def coerce_id(cls, v: Any) -> Any:
        return str(v) if v is not None else v

    @field_validator("discount", "adjustment", "shipping_charge", mode="before")
    @classmethod
    def coerce_amount(cls, v: Any) -> float:
        # The API returns "" for unset amounts
        if v in (None, ""):
            return 0.0
        return float(v)

    @property
    def lifecycle(self) -> InvoiceStatus | None:
        return InvoiceStatus.parse(self.status)

    @property
    def is_locked(self) -> bool:
        lifecycle = self.lifecycle
        return lifecycle.is_locked if lifecycle else False

    @property
    def outstanding(self) -> float:
        if self.balance is not None:
            return self.balance
        return round(self.total - self.payment_made - self.credits_applied, 2)


# ---------------------------------------------------------------------------
# Sync state
# ---------------------------------------------------------------------------


class CreditNoteRef(BaseModel):
    """Link between a local refund and the remote credit note created for it."""

    local_refund_id: str
    credit_note_id: str
    credit_note_number: str | None = None
    remote_refund_id: str | None = None
    amount: float = 0.0
    applied: bool = True


class UnappliedCredit(BaseModel):
    """A credit note that could not be applied to its invoice."""

    credit_note_id: str
    reason: str
    timestamp: datetime


class SyncRecordState(BaseModel):
    """Durable per-record sync state, keyed by local record id."""

    record_id: str
    status: SyncStatus = SyncStatus.PENDING
    remote_invoice_id: str | None = None
    remote_invoice_number: str | None = None
    remote_contact_id: str | None = None
    remote_payment_id: str | None = None
    remote_payment_number: str | None = None
    remote_credit_note_ids: list[CreditNoteRef] = Field(default_factory=list)
    last_attempt_at: datetime | None = None
    last_error: str | None = None
    last_error_kind: str | None = None
    retry_count: int = Field(default=0, ge=0)
    remote_invoice_status: InvoiceStatus | None = None
    unapplied_credit: UnappliedCredit | None = None

    # Last requested disposition, replayed by the retry scheduler
    requested_draft: bool | None = None
    payment_pending: bool = False
    record_date: date | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def check_invoice_status(self) -> "SyncRecordState":
        if self.remote_invoice_id and self.status == SyncStatus.PENDING:
            raise ValueError(
                f"Record {self.record_id} has remote invoice "
                f"{self.remote_invoice_id} but status is pending"
            )
        return self

    def credit_note_for(self, local_refund_id: str) -> CreditNoteRef | None:
        for ref in self.remote_credit_note_ids:
            if ref.local_refund_id == str(local_refund_id):
                return ref
        return None


class SyncResult(BaseModel):
    """Immutable outcome of one orchestration attempt."""

    model_config = ConfigDict(frozen=True)

    success: bool
    status: SyncStatus
    remote_invoice_id: str | None = None
    remote_contact_id: str | None = None
    error: str | None = None
    error_kind: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        remote_invoice_id: str | None,
        remote_contact_id: str | None = None,
        status: SyncStatus = SyncStatus.SYNCED,
        data: dict[str, Any] | None = None,
    ) -> "SyncResult":
        return cls(
            success=True,
            status=status,
            remote_invoice_id=remote_invoice_id,
            remote_contact_id=remote_contact_id,
            data=data or {},
        )

    @classmethod
    def failure(
        cls,
        error: str,
        error_kind: str | None = None,
        remote_invoice_id: str | None = None,
        remote_contact_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> "SyncResult":
        return cls(
            success=False,
            status=SyncStatus.FAILED,
            remote_invoice_id=remote_invoice_id,
            remote_contact_id=remote_contact_id,
            error=error,
            error_kind=error_kind,
            data=data or {},
        )

    @classmethod
    def pending(cls, reason: str, error_kind: str | None = None) -> "SyncResult":
        """Used when the sync cannot proceed now (lock held)."""
        return cls(
            success=False,
            status=SyncStatus.PENDING,
            error=reason,
            error_kind=error_kind,
        )


class PaymentOutcome(BaseModel):
    """Result of applying a payment to a remote invoice."""

    model_config = ConfigDict(frozen=True)

    success: bool
    payment_id: str | None = None
    payment_number: str | None = None
    amount: float = 0.0
    bank_charges: float = 0.0
    error: str | None = None
    error_kind: str | None = None
    already_recorded: bool = False


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class ReportStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DiscrepancyType(str, Enum):
    MISSING_IN_REMOTE = "missing_in_remote"
    MISSING_LOCALLY = "missing_locally"
    AMOUNT_MISMATCH = "amount_mismatch"
    STATUS_MISMATCH = "status_mismatch"
    PAYMENT_MISMATCH = "payment_mismatch"
    REFUND_MISMATCH = "refund_mismatch"


class Discrepancy(BaseModel):
    """One drift finding, with the actions that can resolve it."""

    type: DiscrepancyType
    message: str
    record_id: str | None = None
    order_number: str | None = None
    invoice_id: str | None = None
    invoice_number: str | None = None
    local_total: float | None = None
    remote_total: float | None = None
    delta: float | None = None
    local_status: str | None = None
    remote_status: str | None = None
    breakdown: dict[str, dict[str, float]] = Field(default_factory=dict)
    actions: list[str] = Field(default_factory=list)


class ReconciliationSummary(BaseModel):
    total_local_records: int = 0
    total_remote_invoices: int = 0
    matched_count: int = 0
    missing_in_remote: int = 0
    missing_locally: int = 0
    amount_mismatches: int = 0
    status_mismatches: int = 0
    payment_mismatches: int = 0
    refund_mismatches: int = 0
    local_total_amount: float = 0.0
    remote_total_amount: float = 0.0
    amount_difference: float = 0.0


class ReconciliationReport(BaseModel):
    """Outcome of comparing local and remote records for a period."""

    id: str
    period_start: date
    period_end: date
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    status: ReportStatus = ReportStatus.PENDING
    summary: ReconciliationSummary = Field(default_factory=ReconciliationSummary)
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    error: str | None = None

    def add_discrepancy(self, discrepancy: Discrepancy) -> None:
        self.discrepancies.append(discrepancy)

    @property
    def has_discrepancies(self) -> bool:
        return bool(self.discrepancies)

    @property
    def is_healthy(self) -> bool:
        return self.status == ReportStatus.COMPLETED and not self.discrepancies
