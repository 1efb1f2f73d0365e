"""
Pytest configuration and fixtures for the books sync engine tests.

The remote accounting service is replaced by ``FakeBooks``, an in-process
fake served through ``httpx.MockTransport`` that records every call.
"""

import itertools
import json
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
import structlog

from books_sync.config import Settings
from books_sync.crypto import CredentialCipher
from books_sync.engine import SyncEngine
from books_sync.models import LocalOrder
from books_sync.sources import InMemoryOrderSource

ORG_ID = "10234695"
API_PREFIX = "/books/v3"
TOKEN_PATH = "/oauth/v2/token"


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)
        self.mono = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return self.mono

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)
        self.mono += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


@dataclass
class Call:
    method: str
    path: str
    params: dict[str, str]
    body: Any = None
    headers: dict[str, str] = field(default_factory=dict)


class FakeBooks:
    """
    Minimal accounting service: contacts, invoices, payments, credit notes.

    Invoice totals are computed the way the real service does:
    ``sum(quantity * rate) + shipping_charge - discount``.
    """

    def __init__(self):
        self.contacts: dict[str, dict[str, Any]] = {}
        self.invoices: dict[str, dict[str, Any]] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.credit_notes: dict[str, dict[str, Any]] = {}
        self.calls: list[Call] = []
        self.valid_tokens: set[str] = set()
        self.token_requests = 0
        self.page_size: int | None = None

        self._ids = itertools.count(460000000000001)
        self._numbers = itertools.count(1)
        self._failures: list[tuple[str, re.Pattern, int, dict[str, Any]]] = []

    # -- test helpers ---------------------------------------------------------

    def fail_next(
        self,
        method: str,
        path_pattern: str,
        status: int = 500,
        body: dict[str, Any] | None = None,
        times: int = 1,
    ) -> None:
        """Answer the next ``times`` matching requests with ``status``."""
        for _ in range(times):
            self._failures.append((
                method.upper(),
                re.compile(path_pattern + "$"),
                status,
                body or {"code": 1, "message": f"Injected {status}"},
            ))

    def revoke_tokens(self) -> None:
        self.valid_tokens.clear()

    def api_calls(self, method: str | None = None, path: str | None = None) -> list[Call]:
        return [
            c for c in self.calls
            if c.path != TOKEN_PATH
            and (method is None or c.method == method)
            and (path is None or re.fullmatch(path, c.path))
        ]

    def add_invoice(self, **fields: Any) -> dict[str, Any]:
        """Create an invoice directly, as a user would in the remote UI."""
        invoice = self._new_invoice({
            "customer_id": fields.pop("customer_id", "0"),
            "date": fields.pop("date", "2024-03-01"),
            "line_items": fields.pop("line_items", []),
        })
        invoice.update(fields)
        return invoice

    # -- transport ------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = None
        if request.content and "json" in request.headers.get("content-type", ""):
            body = json.loads(request.content)

        if request.url.path == TOKEN_PATH:
            path = TOKEN_PATH
        else:
            path = request.url.path.removeprefix(API_PREFIX)
        params = dict(request.url.params)
        self.calls.append(Call(request.method, path, params, body, dict(request.headers)))

        if path == TOKEN_PATH:
            return self._token()

        for i, (method, pattern, status, fail_body) in enumerate(self._failures):
            if method == request.method and pattern.match(path):
                del self._failures[i]
                return httpx.Response(status, json=fail_body)

        auth = request.headers.get("Authorization", "")
        token = auth.removeprefix("Zoho-oauthtoken ")
        if token not in self.valid_tokens:
            return httpx.Response(401, json={"code": 57, "message": "You are not authorized to perform this operation"})

        if params.get("organization_id") != ORG_ID:
            return httpx.Response(400, json={"code": 6041, "message": "Invalid organization"})

        return self._route(request.method, path, params, body)

    def _token(self) -> httpx.Response:
        self.token_requests += 1
        token = f"access-{self.token_requests}"
        self.valid_tokens.add(token)
        return httpx.Response(200, json={"access_token": token, "expires_in": 3600, "api_domain": "https://www.zohoapis.com"})

    def _route(self, method: str, path: str, params: dict[str, str], body: Any) -> httpx.Response:
        parts = path.strip("/").split("/")
        resource = parts[0]

        if resource == "organizations":
            return self._ok(organizations=[{"organization_id": ORG_ID, "name": "Acme Outdoor Ltd"}])

        if resource == "contacts":
            if method == "GET" and len(parts) == 1:
                matches = [
                    c for c in self.contacts.values()
                    if all(str(c.get(k, "")).lower() == v.lower() for k, v in params.items()
                           if k in ("email", "company_name", "contact_name"))
                ]
                return self._ok(contacts=matches)
            if method == "GET":
                contact = self.contacts.get(parts[1])
                return self._ok(contact=contact) if contact else self._not_found("Contact")
            if method == "POST":
                contact_id = str(next(self._ids))
                contact = {"contact_id": contact_id, "currency_code": "USD", "status": "active", **body}
                self.contacts[contact_id] = contact
                return self._ok(201, contact=contact)

        if resource == "invoices":
            return self._invoices(method, parts, params, body)

        if resource == "customerpayments" and method == "POST":
            return self._payment(body)

        if resource == "creditnotes":
            return self._credit_notes(method, parts, body)

        return httpx.Response(404, json={"code": 5, "message": "Invalid URL Passed"})

    def _invoices(self, method: str, parts: list[str], params: dict[str, str], body: Any) -> httpx.Response:
        if len(parts) == 1 and method == "GET":
            items = list(self.invoices.values())
            if "reference_number" in params:
                items = [i for i in items if params["reference_number"] in (i.get("reference_number") or "")]
            if "date_start" in params:
                items = [i for i in items if params["date_start"] <= i["date"] <= params["date_end"]]
            per_page = self.page_size or int(params.get("per_page", 200))
            page = int(params.get("page", 1))
            chunk = items[(page - 1) * per_page: page * per_page]
            return self._ok(
                invoices=chunk,
                page_context={"page": page, "per_page": per_page, "has_more_page": page * per_page < len(items)},
            )
        if len(parts) == 1 and method == "POST":
            return self._ok(201, invoice=self._new_invoice(body))

        invoice = self.invoices.get(parts[1])
        if invoice is None:
            return self._not_found("Invoice")

        if len(parts) == 2 and method == "GET":
            return self._ok(invoice=invoice)
        if len(parts) == 2 and method == "PUT":
            if invoice["status"] in ("paid", "void"):
                return httpx.Response(400, json={"code": 1001, "message": "Paid invoices cannot be edited"})
            invoice.update(self._amounts(body))
            for key in ("reference_number", "customer_id", "date", "currency_code"):
                if key in body:
                    invoice[key] = body[key]
            invoice["balance"] = round(invoice["total"] - invoice["payment_made"] - invoice["credits_applied"], 2)
            return self._ok(invoice=invoice)
        if parts[2:] == ["status", "sent"] and method == "POST":
            if invoice["status"] == "draft":
                invoice["status"] = "sent"
            return self._ok(message="Invoice status has been changed to Sent.")

        return httpx.Response(404, json={"code": 5, "message": "Invalid URL Passed"})

    @staticmethod
    def _amounts(body: dict[str, Any]) -> dict[str, Any]:
        lines = body.get("line_items", [])
        sub_total = round(sum(l["quantity"] * l["rate"] for l in lines), 2)
        shipping = float(body.get("shipping_charge", 0) or 0)
        discount = float(body.get("discount", 0) or 0)
        return {
            "line_items": [dict(l, line_item_id=str(n)) for n, l in enumerate(lines)],
            "sub_total": sub_total,
            "shipping_charge": shipping,
            "discount": discount,
            "total": round(sub_total + shipping - discount, 2),
        }

    def _new_invoice(self, body: dict[str, Any]) -> dict[str, Any]:
        invoice_id = str(next(self._ids))
        invoice = {
            "invoice_id": invoice_id,
            "invoice_number": f"INV-{next(self._numbers):06d}",
            "reference_number": body.get("reference_number"),
            "customer_id": body.get("customer_id"),
            "status": "draft",
            "date": body.get("date", "2024-03-01"),
            "currency_code": body.get("currency_code", "USD"),
            "tax_total": 0.0,
            "adjustment": "",
            "payment_made": 0.0,
            "credits_applied": 0.0,
            **self._amounts(body),
        }
        invoice["balance"] = invoice["total"]
        self.invoices[invoice_id] = invoice
        return invoice

    def _payment(self, body: dict[str, Any]) -> httpx.Response:
        payment_id = str(next(self._ids))
        payment = {"payment_id": payment_id, "payment_number": str(len(self.payments) + 1), **body}
        self.payments[payment_id] = payment
        for applied in body.get("invoices", []):
            invoice = self.invoices[applied["invoice_id"]]
            invoice["payment_made"] = round(invoice["payment_made"] + applied["amount_applied"], 2)
            invoice["balance"] = round(invoice["balance"] - applied["amount_applied"], 2)
            invoice["status"] = "paid" if invoice["balance"] <= 0 else "partially_paid"
        return self._ok(201, payment=payment)

    def _credit_notes(self, method: str, parts: list[str], body: Any) -> httpx.Response:
        if len(parts) == 1 and method == "POST":
            note_id = str(next(self._ids))
            total = round(sum(l["quantity"] * l["rate"] for l in body["line_items"]), 2)
            note = {"creditnote_id": note_id, "status": "open", "total": total, **body}
            self.credit_notes[note_id] = note
            return self._ok(201, creditnote=note)

        note = self.credit_notes.get(parts[1])
        if note is None:
            return self._not_found("Credit note")
        if parts[2:] == ["invoices"]:
            for applied in body["invoices"]:
                invoice = self.invoices[applied["invoice_id"]]
                invoice["credits_applied"] = round(invoice["credits_applied"] + applied["amount_applied"], 2)
            note["status"] = "closed"
            return self._ok(message="Credits have been applied to the invoice(s).")
        if parts[2:] == ["refunds"]:
            return self._ok(201, creditnote_refund={"creditnote_refund_id": str(next(self._ids)), **body})
        return httpx.Response(404, json={"code": 5, "message": "Invalid URL Passed"})

    @staticmethod
    def _ok(status: int = 200, **payload: Any) -> httpx.Response:
        return httpx.Response(status, json={"code": 0, "message": "success", **payload})

    @staticmethod
    def _not_found(what: str) -> httpx.Response:
        return httpx.Response(404, json={"code": 1002, "message": f"{what} does not exist."})


def make_order(**overrides: Any) -> LocalOrder:
    """Order #1042: 2 x 60.00 + 12.50 shipping = 132.50, paid by card."""
    data: dict[str, Any] = {
        "id": "1042",
        "number": "1042",
        "status": "processing",
        "currency": "USD",
        "created_at": "2024-03-01T08:15:00Z",
        "billing_email": "jane.doe@example.com",
        "billing_first_name": "Jane",
        "billing_last_name": "Doe",
        "line_items": [{"name": "Trail Backpack", "sku": "BP-40", "quantity": 2, "rate": 60.0}],
        "shipping_total": 12.5,
        "total": 132.5,
        "is_paid": True,
        "payment_method": "stripe",
        "transaction_id": "ch_3OqZ2b",
    }
    data.update(overrides)
    return LocalOrder.model_validate(data)


@pytest.fixture(autouse=True)
def reset_logging():
    yield
    structlog.reset_defaults()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def books():
    return FakeBooks()


@pytest.fixture
def transport(books):
    return httpx.MockTransport(books.handler)


@pytest.fixture
def settings():
    settings = Settings(state_dir=None, encryption_key=CredentialCipher.generate_key())
    settings.api.organization_id = ORG_ID
    return settings


@pytest.fixture
def order():
    return make_order()


@pytest.fixture
def source(order):
    return InMemoryOrderSource([order])


@pytest.fixture
def engine(settings, source, transport, clock):
    engine = SyncEngine(
        settings,
        source,
        transport=transport,
        clock=clock,
        monotonic=clock.monotonic,
        sleep=clock.sleep,
        bulk_delay_seconds=0.0,
    )
    engine.connect("1000.CLIENTID", "client-secret-value", "1000.refresh-token-value")
    yield engine
    engine.close()


@pytest.fixture
def march():
    return date(2024, 3, 1), date(2024, 3, 31)
