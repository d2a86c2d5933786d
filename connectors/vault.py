"""
Token vault: encrypt / decrypt OAuth tokens at rest.

Uses AES-256-GCM (``AESGCM`` from the ``cryptography`` library).  The key is
loaded once at startup from ``config.crypto_key`` (env var:
``POBLYSH_CRYPTO_KEY``) and must be base64 that decodes to exactly 32 bytes;
anything else raises ``CryptoConfigError`` and the process refuses to start.
Generate a key with::

    openssl rand -base64 32

Blob layout::

    0x01 | nonce (12 bytes) | ciphertext + tag (16 bytes)

Every blob is bound to ``"{tenant_id}|{provider}|{external_account_id}"`` as
associated data, so a ciphertext copied onto another tenant's or provider's
row fails authentication.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from connectors.errors import CryptoConfigError, DecryptionError

logger = logging.getLogger(__name__)

KEY_LEN = 32
NONCE_LEN = 12
TAG_LEN = 16
VERSION = 0x01


def build_aad(tenant_id: object, provider: str, external_account_id: str) -> bytes:
    return f"{tenant_id}|{provider}|{external_account_id}".encode("utf-8")


class TokenVault:
    """Process-wide AEAD cipher for credential storage."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LEN:
            raise CryptoConfigError(
                f"crypto key must be {KEY_LEN} bytes after base64 decoding, got {len(key)}"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_base64(cls, encoded: Optional[str]) -> "TokenVault":
        """
        Build the vault from the configured base64 key.

        Raises
        ------
        CryptoConfigError
            If the value is empty, not valid base64, or not 32 bytes long.
        """
        if not encoded or not encoded.strip():
            raise CryptoConfigError("POBLYSH_CRYPTO_KEY is not set")
        try:
            key = base64.b64decode(encoded.strip(), validate=True)
        except (binascii.Error, ValueError):
            raise CryptoConfigError("POBLYSH_CRYPTO_KEY is not valid base64") from None
        vault = cls(key)
        logger.info("Token vault initialised (AES-256-GCM)")
        return vault

    def encrypt(self, plaintext: str, aad: bytes) -> bytes:
        nonce = os.urandom(NONCE_LEN)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), aad)
        return bytes([VERSION]) + nonce + sealed

    def decrypt(self, blob: bytes, aad: bytes) -> str:
        """
        Open a blob produced by :meth:`encrypt`.

        Any failure (unknown version, truncation, tamper, wrong key, wrong
        AAD) raises ``DecryptionError`` with a fixed message.
        """
        if not blob or len(blob) < 1 + NONCE_LEN + TAG_LEN or blob[0] != VERSION:
            raise DecryptionError()
        nonce = blob[1 : 1 + NONCE_LEN]
        try:
            plaintext = self._aead.decrypt(nonce, blob[1 + NONCE_LEN :], aad)
        except InvalidTag:
            raise DecryptionError() from None
        return plaintext.decode("utf-8")

    def __repr__(self) -> str:
        return "TokenVault(<redacted>)"
