"""Fernet-based field encryption for device metadata at rest.

Push-token registration carries free-form device details (model, OS build,
app version). Those blobs are encrypted before they reach SQLite; tokens,
ids and feature vectors stay in the clear because they are looked up or
scanned directly.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionError(Exception):
    """Raised when a blob cannot be sealed or opened."""


class FieldEncryptor:
    """Seals JSON-serializable blobs into Fernet tokens and back.

    Usage::

        encryptor = FieldEncryptor(FieldEncryptor.generate_key())
        sealed = encryptor.encrypt({"platform": "ios", "model": "iPhone15,2"})
        encryptor.decrypt(sealed)  # {"platform": "ios", "model": "iPhone15,2"}

    ``None`` seals to the empty string and the empty string opens to ``None``
    so optional columns round-trip without special casing.
    """

    def __init__(self, key: str) -> None:
        """Initialize with a Fernet key.

        Raises:
            EncryptionError: If the key is empty or not a valid Fernet key.
        """
        if not key or not key.strip():
            raise EncryptionError("Encryption key must not be empty")
        try:
            self._fernet = Fernet(key.strip().encode("utf-8"))
        except ValueError as exc:
            raise EncryptionError(f"Invalid encryption key: {exc}") from exc

    def encrypt(self, data: Any) -> str:
        """Serialize ``data`` to compact JSON and seal it."""
        if data is None:
            return ""
        try:
            plaintext = json.dumps(data, separators=(",", ":"), sort_keys=True)
        except (TypeError, ValueError) as exc:
            raise EncryptionError(f"Value is not JSON-serializable: {exc}") from exc
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, token: str) -> Any:
        """Open a sealed token and parse the JSON inside.

        Raises:
            EncryptionError: If the token was sealed with another key or is corrupt.
        """
        if not token:
            return None
        try:
            plaintext = self._fernet.decrypt(token.encode("utf-8"))
        except InvalidToken as exc:
            raise EncryptionError("Decryption failed: invalid token or wrong key") from exc
        try:
            return json.loads(plaintext)
        except ValueError as exc:
            raise EncryptionError(f"Decrypted payload is not JSON: {exc}") from exc

    @staticmethod
    def generate_key() -> str:
        """Generate a new URL-safe base64 Fernet key."""
        return Fernet.generate_key().decode("utf-8")
