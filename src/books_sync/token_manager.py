"""
OAuth credential storage and access-token lifecycle.

Refreshes are single-flight: the accounting service invalidates the
previous access token on every refresh, so two parallel refreshes would
each revoke the other's token. One caller performs the refresh; everyone
else waits on the same future.
"""

import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import httpx
import structlog

from books_sync.crypto import CredentialCipher
from books_sync.exceptions import AuthError, NetworkError
from books_sync.store import JsonFile

logger = structlog.get_logger(__name__)

DEFAULT_TOKEN_URL = "https://accounts.zoho.com/oauth/v2/token"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OAuthCredentialSet:
    """Decrypted credentials plus the ephemeral access token."""
    client_id: str
    client_secret: str
    refresh_token: str
    access_token: str | None = None
    access_token_expires_at: datetime | None = None

    @property
    def complete(self) -> bool:
        return bool(self.client_id and self.client_secret and self.refresh_token)


class CredentialStore:
    """
    Encrypted credential persistence.

    Every field is encrypted before it reaches storage; the raw document
    never contains plaintext.
    """

    SECRET_FIELDS = ("client_id", "client_secret", "refresh_token", "access_token")

    def __init__(self, cipher: CredentialCipher, path: str | Path | None = None):
        self._cipher = cipher
        self._file = JsonFile(path)
        self._raw: dict[str, Any] = self._file.load() or {}
        self._lock = threading.Lock()

    def raw(self) -> dict[str, Any]:
        """The stored (encrypted) document."""
        with self._lock:
            return dict(self._raw)

    def load(self) -> OAuthCredentialSet | None:
        with self._lock:
            raw = dict(self._raw)

        if not raw.get("refresh_token"):
            return None

        expires_at = raw.get("access_token_expires_at")
        return OAuthCredentialSet(
            client_id=self._cipher.decrypt(raw.get("client_id", "")),
            client_secret=self._cipher.decrypt(raw.get("client_secret", "")),
            refresh_token=self._cipher.decrypt(raw.get("refresh_token", "")),
            access_token=self._cipher.decrypt(raw.get("access_token", "")) or None,
            access_token_expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )

    def save(self, credentials: OAuthCredentialSet) -> None:
        raw = {
            "client_id": self._cipher.encrypt(credentials.client_id),
            "client_secret": self._cipher.encrypt(credentials.client_secret),
            "refresh_token": self._cipher.encrypt(credentials.refresh_token),
        }
        if credentials.access_token and credentials.access_token_expires_at:
            raw["access_token"] = self._cipher.encrypt(credentials.access_token)
            raw["access_token_expires_at"] = credentials.access_token_expires_at.isoformat()

        with self._lock:
            self._raw = raw
            self._file.save(raw)

    def clear(self) -> None:
        with self._lock:
            self._raw = {}
            self._file.clear()


class TokenManager:
    """
    Hands out valid access tokens, refreshing when needed.

    Example:
        manager = TokenManager(CredentialStore(cipher, path))
        manager.save_credentials(client_id, client_secret, refresh_token)

        token = manager.get_valid_access_token()
    """

    SAFETY_BUFFER_SECONDS = 300

    def __init__(
        self,
        store: CredentialStore,
        token_url: str = DEFAULT_TOKEN_URL,
        http_client: httpx.Client | None = None,
        timeout: float = 30.0,
        refresh_wait_seconds: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self.token_url = token_url
        self._http = http_client
        self.timeout = timeout
        self.refresh_wait_seconds = refresh_wait_seconds
        self._clock = clock

        self._lock = threading.Lock()
        self._inflight: Future | None = None
        self._credentials: OAuthCredentialSet | None = store.load()
        self._refresh_count = 0

        self._log = logger.bind(token_url=token_url)
        self._drop_expired_token()

    def _drop_expired_token(self) -> None:
        """Never keep an expired access token in storage."""
        creds = self._credentials
        if creds and creds.access_token and not self._is_fresh(creds, buffer=0):
            creds.access_token = None
            creds.access_token_expires_at = None
            self._store.save(creds)

    def _is_fresh(self, creds: OAuthCredentialSet, buffer: int | None = None) -> bool:
        if not creds.access_token or creds.access_token_expires_at is None:
            return False
        margin = timedelta(seconds=self.SAFETY_BUFFER_SECONDS if buffer is None else buffer)
        return self._clock() < creds.access_token_expires_at - margin

    def has_credentials(self) -> bool:
        with self._lock:
            return bool(self._credentials and self._credentials.complete)

    def save_credentials(self, client_id: str, client_secret: str, refresh_token: str) -> None:
        """Overwrite stored credentials and force a refresh on next use."""
        creds = OAuthCredentialSet(
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=refresh_token,
        )
        with self._lock:
            self._store.save(creds)
            self._credentials = creds
        self._log.info("Saved OAuth credentials")

    def invalidate_access_token(self, rejected_token: str | None = None) -> None:
        """
        Drop the cached access token.

        If ``rejected_token`` is given and a different token is already
        cached, another caller refreshed in the meantime; keep it.
        """
        with self._lock:
            creds = self._credentials
            if not creds or not creds.access_token:
                return
            if rejected_token is not None and creds.access_token != rejected_token:
                return
            creds.access_token = None
            creds.access_token_expires_at = None
            self._store.save(creds)
        self._log.info("Invalidated cached access token")

    def get_valid_access_token(self) -> str:
        """
        Return a token valid for at least the safety buffer.

        Raises:
            AuthError: Not configured, or the remote refused the refresh
            NetworkError: The token endpoint could not be reached
        """
        with self._lock:
            creds = self._credentials
            if creds is None or not creds.complete:
                raise AuthError(
                    "Accounting service is not connected - save OAuth credentials first"
                )
            if self._is_fresh(creds):
                return creds.access_token

            if self._inflight is None:
                future: Future = Future()
                self._inflight = future
                leader = True
            else:
                future = self._inflight
                leader = False

        if not leader:
            self._log.debug("Waiting on in-flight token refresh")
            try:
                return future.result(timeout=self.refresh_wait_seconds)
            except FutureTimeoutError:
                raise NetworkError("Timed out waiting for token refresh") from None

        try:
            token = self._refresh(creds)
        except Exception as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(token)
            return token
        finally:
            with self._lock:
                self._inflight = None

    def _refresh(self, creds: OAuthCredentialSet) -> str:
        """Call the OAuth endpoint. Runs outside the lock, once at a time."""
        self._log.info("Refreshing access token")
        params = {
            "refresh_token": creds.refresh_token,
            "client_id": creds.client_id,
            "client_secret": creds.client_secret,
            "grant_type": "refresh_token",
        }

        try:
            if self._http is not None:
                response = self._http.post(self.token_url, data=params, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.token_url, data=params)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Token refresh timed out: {e}")
        except httpx.TransportError as e:
            raise NetworkError(f"Token refresh failed: {e}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 500:
            raise NetworkError(
                "Token endpoint unavailable",
                status_code=response.status_code,
                response_body=response.text[:500],
            )

        access_token = payload.get("access_token")
        if response.status_code >= 400 or payload.get("error") or not access_token:
            detail = payload.get("error_description") or payload.get("error") or response.text[:200]
            self._log.error("Token refresh rejected", status_code=response.status_code, error=detail)
            raise AuthError(
                f"Token refresh failed: {detail}",
                status_code=response.status_code,
            )

        expires_in = int(payload.get("expires_in", 3600))
        with self._lock:
            current = self._credentials or creds
            current.access_token = access_token
            current.access_token_expires_at = self._clock() + timedelta(seconds=expires_in)
            self._store.save(current)
            self._credentials = current
            self._refresh_count += 1

        self._log.info("Access token refreshed", expires_in=expires_in)
        return access_token

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            creds = self._credentials
            expires_at = creds.access_token_expires_at if creds else None
        return {
            "configured": bool(creds and creds.complete),
            "refresh_count": self._refresh_count,
            "access_token_expires_at": expires_at.isoformat() if expires_at else None,
        }
