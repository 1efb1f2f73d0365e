"""
Books Sync Engine

Mirrors local e-commerce orders into a cloud accounting service as
invoices, customer payments and credit notes, and reconciles the two
sides.

Features:
- Idempotent per-record sync state machine
- Fixed-window rate limiting shared by every outbound call
- Single-flight OAuth token refresh, credentials encrypted at rest
- Exponential backoff retry of failed syncs
- Periodic reconciliation reports with suggested actions

Quick Start:
    pip install books-sync-engine
    books-sync setup     # Interactive configuration
    books-sync test      # Verify connection
    books-sync sync 1042 # Sync one order
"""

from books_sync.engine import SyncEngine
from books_sync.client import BooksApiClient
from books_sync.config import Settings, load_settings, save_settings
from books_sync.exceptions import (
    AuthError,
    ConfigurationError,
    ConflictError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    RecordLockedError,
    RemoteError,
    SyncError,
    TokenRejectedError,
)
from books_sync.models import (
    Discrepancy,
    DiscrepancyType,
    InvoiceStatus,
    LocalOrder,
    LocalRefund,
    PaymentOutcome,
    ReconciliationReport,
    SyncRecordState,
    SyncResult,
    SyncStatus,
)
from books_sync.orchestrator import SyncOrchestrator
from books_sync.rate_limiter import FixedWindowRateLimiter
from books_sync.reconciliation import ReconciliationEngine
from books_sync.retry import RetryScheduler
from books_sync.bulk import BulkRunner
from books_sync.sources import InMemoryOrderSource, JsonOrderSource, OrderSource
from books_sync.store import RecordStateStore, ReportRepository
from books_sync.token_manager import TokenManager

__version__ = "1.0.0"
__all__ = [
    # Engine
    "SyncEngine",
    "SyncOrchestrator",
    "RetryScheduler",
    "BulkRunner",
    "ReconciliationEngine",

    # API client
    "BooksApiClient",
    "TokenManager",
    "FixedWindowRateLimiter",

    # Errors
    "SyncError",
    "AuthError",
    "TokenRejectedError",
    "RateLimitError",
    "RemoteError",
    "NotFoundError",
    "NetworkError",
    "ConflictError",
    "RecordLockedError",
    "ConfigurationError",

    # Models
    "LocalOrder",
    "LocalRefund",
    "InvoiceStatus",
    "SyncStatus",
    "SyncRecordState",
    "SyncResult",
    "PaymentOutcome",
    "ReconciliationReport",
    "Discrepancy",
    "DiscrepancyType",

    # Configuration
    "Settings",
    "load_settings",
    "save_settings",

    # Storage
    "RecordStateStore",
    "ReportRepository",
    "OrderSource",
    "InMemoryOrderSource",
    "JsonOrderSource",
]
