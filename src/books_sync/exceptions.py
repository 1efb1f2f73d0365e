"""
Error taxonomy for the sync engine.

Every remote failure is classified into one of these types by the API
client. The orchestrator decides per kind whether to abort, degrade, or
auto-heal, and copies ``kind`` into ``SyncResult.error_kind``.
"""


class SyncError(Exception):
    """Base exception for all sync engine errors."""

    kind = "sync_error"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class AuthError(SyncError):
    """Credential or token failure. Needs reconnection, never auto-retried."""

    kind = "auth"


class TokenRejectedError(AuthError):
    """The remote rejected an access token we believed was valid (401)."""
    pass


class RateLimitError(SyncError):
    """Local budget exhausted in non-blocking mode, or remote 429."""

    kind = "rate_limited"

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message, status_code=status_code, response_body=response_body)
        self.retry_after = retry_after


class RemoteError(SyncError):
    """The remote rejected the request (4xx or a non-zero API code)."""

    kind = "remote"

    def __init__(
        self,
        message: str,
        code: int | None = None,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message, status_code=status_code, response_body=response_body)
        self.code = code


class NotFoundError(RemoteError):
    """A referenced remote entity no longer exists."""

    kind = "not_found"


class NetworkError(SyncError):
    """Transient transport failure, timeout, or remote 5xx."""

    kind = "network"


class ConflictError(SyncError):
    """Local and remote state diverged on a locked remote record."""

    kind = "conflict"

    def __init__(self, message: str, drift: list[dict] | None = None):
        super().__init__(message)
        self.drift = drift or []


class RecordLockedError(SyncError):
    """Another trigger holds the per-record lock."""

    kind = "locked"


class ConfigurationError(SyncError):
    """Invalid or missing configuration."""

    kind = "config"
