"""
Token encryption — encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM from the ``cryptography`` library.  The 256-bit key is the
SHA-256 digest of the operator secret (env var: ``ENCRYPTION_KEY``), derived
once when the cipher is built.  Every call draws a fresh 96-bit IV, and the
output is self-describing::

    <iv hex>:<ciphertext+tag hex>

There is no plaintext fallback: building a cipher without a secret raises
``ConfigurationError``.  Generate a secret with::

    python -c "import secrets; print(secrets.token_hex(32))"
"""

from __future__ import annotations

import hashlib
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from connectors.errors import ConfigurationError, TokenDecryptionError

logger = logging.getLogger(__name__)

_IV_BYTES = 12


class TokenCipher:
    """Authenticated symmetric cipher for token material."""

    def __init__(self, secret: str) -> None:
        if not secret or not secret.strip():
            raise ConfigurationError(
                "ENCRYPTION_KEY (or MCP_ENCRYPTION_KEY) is required for OAuth token encryption"
            )
        key = hashlib.sha256(secret.encode("utf-8")).digest()
        self._aead = AESGCM(key)
        logger.info("Token encryption enabled (AES-256-GCM)")

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token string for database storage."""
        iv = os.urandom(_IV_BYTES)
        ciphertext = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return f"{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a value produced by :meth:`encrypt`.

        Raises ``TokenDecryptionError`` for anything that is not a valid
        ciphertext under this key, including values written with another key.
        """
        try:
            iv_hex, body_hex = ciphertext.split(":", 1)
            iv = bytes.fromhex(iv_hex)
            body = bytes.fromhex(body_hex)
        except (AttributeError, ValueError) as exc:
            raise TokenDecryptionError("malformed token ciphertext") from exc

        if len(iv) != _IV_BYTES:
            raise TokenDecryptionError("malformed token ciphertext")

        try:
            return self._aead.decrypt(iv, body, None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError) as exc:
            raise TokenDecryptionError("token ciphertext failed authentication") from exc
