from __future__ import annotations

import base64
import binascii
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_BYTES = 12


class KeyUnavailableError(Exception):
    """Raised when encryption is requested without a configured key."""


class KeyManager:
    """Holds the token encryption key for the lifetime of the process.

    Built once at startup and passed by reference to the token vault.
    """

    def __init__(self, raw_key: bytes | None) -> None:
        if raw_key is not None and len(raw_key) not in {16, 24, 32}:
            raise ValueError("token encryption key must be 16, 24 or 32 bytes")
        self._aead = AESGCM(raw_key) if raw_key else None

    @classmethod
    def from_base64(cls, encoded: str | None) -> KeyManager:
        if not encoded:
            return cls(None)
        try:
            raw_key = base64.b64decode(encoded.strip(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("token encryption key must be valid base64") from exc
        return cls(raw_key)

    @property
    def enabled(self) -> bool:
        return self._aead is not None

    def encrypt(self, plaintext: str) -> tuple[bytes, bytes]:
        if self._aead is None:
            raise KeyUnavailableError("token encryption key is not configured")
        iv = os.urandom(IV_BYTES)
        return self._aead.encrypt(iv, plaintext.encode("utf-8"), None), iv

    def decrypt(self, ciphertext: bytes, iv: bytes) -> str:
        if self._aead is None:
            raise KeyUnavailableError("token encryption key is not configured")
        return self._aead.decrypt(iv, ciphertext, None).decode("utf-8")
