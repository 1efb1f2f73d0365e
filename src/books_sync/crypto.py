"""Encryption at rest for stored OAuth credentials."""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from books_sync.exceptions import AuthError, ConfigurationError


class CredentialCipher:
    """
    Symmetric encryption for credential fields.

    Accepts either a Fernet key (44 url-safe base64 characters) or an
    arbitrary passphrase, which is stretched to a key with SHA-256.
    """

    def __init__(self, key: str | bytes):
        if not key:
            raise ConfigurationError("An encryption key is required to store credentials")

        raw = key.encode() if isinstance(key, str) else key
        if len(raw) != 44:
            raw = base64.urlsafe_b64encode(hashlib.sha256(raw).digest())

        try:
            self._fernet = Fernet(raw)
        except ValueError:
            # 44 characters but not valid base64: treat as passphrase
            self._fernet = Fernet(base64.urlsafe_b64encode(hashlib.sha256(raw).digest()))

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, value: str) -> str:
        if not value:
            return ""
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, token: str) -> str:
        if not token:
            return ""
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken:
            raise AuthError(
                "Stored credentials cannot be decrypted - the encryption key "
                "changed. Reconnect to the accounting service."
            )
