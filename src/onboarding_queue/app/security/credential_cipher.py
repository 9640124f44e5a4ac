"""Encryption at rest for accepted backend credentials.

Anon keys, service-role keys and database passwords are encrypted with
Fernet (AES-128-CBC + HMAC-SHA256) before they reach the store. The key comes
from ``CREDENTIAL_ENCRYPTION_KEY``; local development generates an ephemeral
one, which means stored secrets do not survive a restart there.
"""

from __future__ import annotations

from cryptography.fernet import Fernet, InvalidToken


class CredentialCipherError(ValueError):
    """Raised when a key is malformed or a token cannot be decrypted."""


class CredentialCipher:
    def __init__(self, key: str | bytes) -> None:
        if not key:
            raise CredentialCipherError('encryption key is required')
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as exc:
            raise CredentialCipherError(
                'encryption key must be 32 url-safe base64-encoded bytes'
            ) from exc

    @classmethod
    def ephemeral(cls) -> CredentialCipher:
        return cls(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode('utf-8')).decode('ascii')

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        return self.encrypt(plaintext) if plaintext else None

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode('ascii')).decode('utf-8')
        except InvalidToken as exc:
            raise CredentialCipherError('credential token is invalid') from exc
