"""
Accounting API Client

Synchronous HTTP client with:
- Rate-limit admission before every call
- OAuth token injection, with one re-attempt after a 401
- Uniform error classification (auth, rate limit, remote, not found, network)
- Connection pooling
- Request/response logging with a correlation id per call
- Pagination helper for list endpoints

Transient failures (5xx, timeouts) are classified and raised, never retried
here: the retry scheduler re-attempts at the record level so every attempt
is recorded.
"""

import time
import uuid
from datetime import date
from typing import Any, Iterator, TypeVar

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
)

from books_sync.exceptions import (
    AuthError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    RemoteError,
    SyncError,
    TokenRejectedError,
)
from books_sync.models import RemoteContact, RemoteInvoice
from books_sync.rate_limiter import FixedWindowRateLimiter
from books_sync.token_manager import TokenManager

logger = structlog.get_logger(__name__)

DEFAULT_BASE_URL = "https://www.zohoapis.com/books/v3"

# Safety limit for paginated listings
MAX_PAGES = 100

ModelT = TypeVar("ModelT", bound=BaseModel)


class BooksApiClient:
    """
    Client for the remote accounting API.

    Example:
        client = BooksApiClient(
            organization_id="10234695",
            token_manager=token_manager,
            rate_limiter=FixedWindowRateLimiter(limit=100, window_seconds=60),
        )

        with client:
            invoice = client.get_invoice("460000000054")
    """

    def __init__(
        self,
        organization_id: str,
        token_manager: TokenManager,
        rate_limiter: FixedWindowRateLimiter,
        base_url: str = DEFAULT_BASE_URL,
        auth_scheme: str = "Zoho-oauthtoken",
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            organization_id: Accounting organization the calls act on
            token_manager: Source of valid access tokens
            rate_limiter: Shared process-wide limiter
            base_url: API root
            auth_scheme: Authorization header scheme
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests use MockTransport)
        """
        if not organization_id:
            raise ValueError("organization_id is required")

        self.organization_id = str(organization_id)
        self.token_manager = token_manager
        self.rate_limiter = rate_limiter
        self.base_url = base_url.rstrip("/")
        self.auth_scheme = auth_scheme
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.Client | None = None

        # Request counters for observability
        self._request_count = 0
        self._error_count = 0
        self._errors_by_kind: dict[str, int] = {}

        self._log = logger.bind(organization_id=self.organization_id)

    def _build_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers={"User-Agent": "books-sync-engine/1.0"},
            transport=self._transport,
        )

    def __enter__(self) -> "BooksApiClient":
        """Initialize HTTP client with connection pooling."""
        if self._client is None:
            self._client = self._build_client()
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    @property
    def client(self) -> httpx.Client:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = self._build_client()
        return self._client

    def _record_error(self, exc: SyncError) -> None:
        self._error_count += 1
        self._errors_by_kind[exc.kind] = self._errors_by_kind.get(exc.kind, 0) + 1

    def call(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Make an admitted, authenticated request and classify the outcome.

        Raises:
            AuthError: Credentials missing/refused (after one token refresh)
            RateLimitError: Local budget exhausted or remote 429
            NotFoundError: Remote 404
            RemoteError: Other 4xx or a non-zero API result code
            NetworkError: 5xx, timeout, or transport failure
        """
        log = self._log.bind(endpoint=endpoint, method=method)

        def _invalidate(retry_state) -> None:
            exc = retry_state.outcome.exception()
            log.info("Access token rejected, refreshing once")
            self.token_manager.invalidate_access_token(getattr(exc, "rejected_token", None))

        @retry(
            retry=retry_if_exception_type(TokenRejectedError),
            stop=stop_after_attempt(2),
            before_sleep=_invalidate,
            reraise=True,
        )
        def _do_request() -> dict[str, Any]:
            self.rate_limiter.admit()
            token = self.token_manager.get_valid_access_token()

            url = f"{self.base_url}{endpoint}"
            request_params = dict(params) if params else {}
            request_params["organization_id"] = self.organization_id

            correlation_id = uuid.uuid4().hex[:12]
            headers = {
                "Authorization": f"{self.auth_scheme} {token}",
                "X-Correlation-ID": correlation_id,
            }

            self._request_count += 1
            start_time = time.monotonic()
            try:
                response = self.client.request(
                    method, url, params=request_params, json=json, headers=headers
                )
            except httpx.TimeoutException as e:
                exc = NetworkError(f"Request timed out: {endpoint}")
                self._record_error(exc)
                log.warning("API timeout", correlation_id=correlation_id, error=str(e))
                raise exc
            except httpx.TransportError as e:
                exc = NetworkError(f"Network error calling {endpoint}: {e}")
                self._record_error(exc)
                log.warning("API transport error", correlation_id=correlation_id, error=str(e))
                raise exc
            elapsed = time.monotonic() - start_time

            log.info(
                "API call",
                correlation_id=correlation_id,
                status_code=response.status_code,
                elapsed_ms=round(elapsed * 1000),
            )

            try:
                return self._classify(response, endpoint, token)
            except SyncError as exc:
                self._record_error(exc)
                raise

        return _do_request()

    def _classify(self, response: httpx.Response, endpoint: str, token: str) -> dict[str, Any]:
        """Map an HTTP response to a payload or a typed error."""
        status_code = response.status_code
        body = response.text[:500]

        try:
            payload = response.json()
        except ValueError:
            payload = None

        message = ""
        code = None
        if isinstance(payload, dict):
            message = str(payload.get("message", ""))
            code = payload.get("code")

        if status_code == 401:
            exc = TokenRejectedError(
                f"Access token rejected: {message or 'unauthorized'}",
                status_code=401,
            )
            exc.rejected_token = token
            raise exc

        if status_code == 403:
            raise AuthError(
                f"Access denied: {message or 'forbidden'}",
                status_code=403,
                response_body=body,
            )

        if status_code == 404:
            raise NotFoundError(
                message or f"Resource not found: {endpoint}",
                code=code,
                status_code=404,
                response_body=body,
            )

        if status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Remote rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                status_code=429,
                response_body=body,
            )

        if status_code >= 500:
            raise NetworkError(
                f"Server error {status_code}",
                status_code=status_code,
                response_body=body,
            )

        if status_code >= 400:
            raise RemoteError(
                message or f"API error: {body[:200]}",
                code=code,
                status_code=status_code,
                response_body=body,
            )

        if not isinstance(payload, dict):
            raise RemoteError(f"Invalid JSON response from {endpoint}", status_code=status_code)

        # The API reports some rejections as 200 with a non-zero code
        if code not in (None, 0):
            raise RemoteError(
                message or f"API error code {code}",
                code=code,
                status_code=status_code,
                response_body=body,
            )

        return payload

    @staticmethod
    def _parse(model: type[ModelT], data: Any) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise RemoteError(f"Unexpected {model.__name__} payload: {e.error_count()} invalid fields")

    def get(self, endpoint: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.call("GET", endpoint, params=params)

    def post(
        self,
        endpoint: str,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        return self.call("POST", endpoint, params=params, json=json)

    def put(self, endpoint: str, json: dict[str, Any] | None = None) -> dict[str, Any]:
        return self.call("PUT", endpoint, json=json)

    def iter_pages(
        self,
        endpoint: str,
        key: str,
        params: dict[str, Any] | None = None,
        per_page: int = 200,
    ) -> Iterator[dict[str, Any]]:
        """Yield items from a paginated list endpoint."""
        page = 1
        while page <= MAX_PAGES:
            page_params = dict(params or {})
            page_params.update({"page": page, "per_page": per_page})
            data = self.get(endpoint, page_params)

            items = data.get(key) or []
            yield from items

            self._log.debug("Fetched page", endpoint=endpoint, page=page, count=len(items))

            if not items or not data.get("page_context", {}).get("has_more_page"):
                return
            page += 1

        self._log.warning("Pagination reached page limit", endpoint=endpoint, pages=MAX_PAGES)

    # -------------------------------------------------------------------------
    # Contacts
    # -------------------------------------------------------------------------

    def search_contacts(self, **filters: str) -> list[RemoteContact]:
        data = self.get("/contacts", filters)
        return [self._parse(RemoteContact, c) for c in data.get("contacts", [])]

    def get_contact(self, contact_id: str) -> RemoteContact:
        data = self.get(f"/contacts/{contact_id}")
        return self._parse(RemoteContact, data.get("contact", data))

    def create_contact(self, payload: dict[str, Any]) -> RemoteContact:
        data = self.post("/contacts", payload)
        return self._parse(RemoteContact, data.get("contact", data))

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def get_invoice(self, invoice_id: str) -> RemoteInvoice:
        data = self.get(f"/invoices/{invoice_id}")
        return self._parse(RemoteInvoice, data.get("invoice", data))

    def create_invoice(self, payload: dict[str, Any]) -> RemoteInvoice:
        data = self.post("/invoices", payload, params={"ignore_auto_number_generation": "false"})
        return self._parse(RemoteInvoice, data.get("invoice", data))

    def update_invoice(self, invoice_id: str, payload: dict[str, Any]) -> RemoteInvoice:
        data = self.put(f"/invoices/{invoice_id}", payload)
        return self._parse(RemoteInvoice, data.get("invoice", data))

    def mark_invoice_sent(self, invoice_id: str) -> None:
        self.post(f"/invoices/{invoice_id}/status/sent")

    def find_invoices(self, **filters: str) -> list[RemoteInvoice]:
        data = self.get("/invoices", filters)
        return [self._parse(RemoteInvoice, i) for i in data.get("invoices", [])]

    def iter_invoices(self, start: date, end: date) -> Iterator[RemoteInvoice]:
        """All invoices dated within [start, end]."""
        params = {"date_start": start.isoformat(), "date_end": end.isoformat()}
        for item in self.iter_pages("/invoices", "invoices", params):
            yield self._parse(RemoteInvoice, item)

    # -------------------------------------------------------------------------
    # Payments and credit notes
    # -------------------------------------------------------------------------

    def create_payment(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = self.post("/customerpayments", payload)
        return data.get("payment", data)

    def create_credit_note(self, payload: dict[str, Any]) -> dict[str, Any]:
        data = self.post("/creditnotes", payload)
        return data.get("creditnote", data)

    def apply_credit_note(self, credit_note_id: str, invoice_id: str, amount: float) -> None:
        self.post(
            f"/creditnotes/{credit_note_id}/invoices",
            {"invoices": [{"invoice_id": invoice_id, "amount_applied": amount}]},
        )

    def refund_credit_note(self, credit_note_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        data = self.post(f"/creditnotes/{credit_note_id}/refunds", payload)
        return data.get("creditnote_refund", data)

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            "organization_id": self.organization_id,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
            "errors_by_kind": dict(self._errors_by_kind),
            "rate_limiter": self.rate_limiter.get_stats(),
        }

    def health_check(self) -> dict[str, Any]:
        """Verify API connectivity and credentials."""
        try:
            data = self.get("/organizations")
            orgs = data.get("organizations", [])
            name = next(
                (o.get("name") for o in orgs if str(o.get("organization_id")) == self.organization_id),
                None,
            )
            return {
                "status": "healthy",
                "organization": name or self.organization_id,
            }
        except AuthError as e:
            return {"status": "auth_error", "message": str(e)}
        except SyncError as e:
            return {"status": "error", "kind": e.kind, "message": str(e)}
