"""
core/crypto.py -- Symmetric payload cipher for the optional encrypted transport.

When PAYLOAD_ENCRYPTION is enabled, clients send {"encryptedData": "<token>"}
instead of a plain JSON body. The middleware in api/middleware.py decrypts it
back into the original JSON bytes before routing.

Fernet (AES-128-CBC + HMAC-SHA256) gives authenticated encryption: a tampered
or foreign token fails with InvalidToken instead of yielding garbage. The
Fernet key is derived from ENCRYPTION_KEY with PBKDF2 so operators can
configure any passphrase.
"""

from __future__ import annotations

import base64
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.errors import ValidationError

# Static salt: the key must be reproducible on every process from the same
# passphrase. Secrecy rests on ENCRYPTION_KEY, not on the salt.
_SALT = b"immobilier-payload-cipher"
_ITERATIONS = 100_000


def derive_key(passphrase: str) -> bytes:
    """Derive a urlsafe-base64 Fernet key from an arbitrary passphrase."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_SALT,
        iterations=_ITERATIONS,
    )
    return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))


class PayloadCipher:
    """Encrypt and decrypt JSON payloads with a passphrase-derived Fernet key."""

    def __init__(self, passphrase: str) -> None:
        self._fernet = Fernet(derive_key(passphrase))

    def encrypt_bytes(self, raw: bytes) -> str:
        return self._fernet.encrypt(raw).decode("ascii")

    def decrypt_bytes(self, token: str) -> bytes:
        """Return the original bytes. Raises ValidationError on a bad token."""
        try:
            return self._fernet.decrypt(token.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as exc:
            raise ValidationError("Unable to decrypt payload.") from exc

    def wrap(self, raw: bytes) -> dict[str, str]:
        """Encrypt a serialized JSON body as {"encryptedData": token}."""
        return {"encryptedData": self.encrypt_bytes(raw)}

    def unwrap(self, envelope: dict[str, Any]) -> bytes:
        token = envelope.get("encryptedData")
        if not isinstance(token, str):
            raise ValidationError("Missing encryptedData field.")
        return self.decrypt_bytes(token)
