"""Summary: Token encryption utilities for OAuth credentials.

Importance: Keeps access and refresh tokens encrypted at rest with an authenticated cipher.
Alternatives: Use a dedicated secrets manager or Fernet tokens.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


logger = logging.getLogger(__name__)

NONCE_SIZE = 12


class TokenCodec:
    """Summary: AES-256-GCM token encoder/decoder.

    Importance: Stored values are base64(nonce || ciphertext || tag) so tampering is detected.
    Alternatives: Use Fernet with a url-safe base64 key.
    """

    def __init__(self, key_hex: str) -> None:
        """Summary: Initialize with a 32-byte key given as 64 hex characters.

        Importance: Keeps token encoding consistent per deployment.
        Alternatives: Derive a key from a passphrase with a KDF.
        """

        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise ValueError("Token encryption key must be hex encoded") from exc
        if len(key) != 32:
            raise ValueError("Token encryption key must be 32 bytes (64 hex characters)")
        self._aead = AESGCM(key)

    def encode(self, plaintext: str) -> str:
        """Summary: Encrypt plaintext into a storable string.

        Importance: Avoids storing raw tokens in SQLite.
        Alternatives: Store tokens in a vault.
        """

        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decode(self, payload: str) -> str:
        """Summary: Decrypt a stored token, falling back to the raw value.

        Importance: Rows written before encryption was enabled still hold plaintext tokens.
        Alternatives: Hard-fail and force every legacy user to reconnect.
        """

        try:
            raw = base64.b64decode(payload.encode("ascii"), validate=True)
            if len(raw) <= NONCE_SIZE:
                raise ValueError("payload too short")
            plaintext = self._aead.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], None)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError, binascii.Error, UnicodeError):
            logger.debug("Stored token is not encrypted; using it as plaintext.")
            return payload

    def decode_optional(self, payload: str | None) -> str | None:
        if payload is None:
            return None
        return self.decode(payload)
