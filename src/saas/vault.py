"""Credential vault — AES-256-GCM envelopes for tenant secrets at rest.

Envelope format::

    <iv hex>:<tag hex>:<ciphertext hex>

The key comes from ``Settings.encryption_key`` as base64 of exactly 32 bytes.
A key of any other length is rejected at construction; it is never padded
or truncated.
"""

from __future__ import annotations

import base64
import binascii
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config.settings import get_settings
from src.core.constants import (
    ENCRYPTION_KEY_BYTES,
    ENVELOPE_IV_BYTES,
    ENVELOPE_SEPARATOR,
    ENVELOPE_TAG_BYTES,
)
from src.core.exceptions import ConfigurationError, DecryptionError


_HEX_RE = re.compile(r"(?:[0-9a-f]{2})*")


def decode_key(encoded: str) -> bytes:
    """Decode and validate a base64 key. Raises ConfigurationError."""
    if not encoded:
        raise ConfigurationError("ENCRYPTION_KEY is not set")
    try:
        key = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("ENCRYPTION_KEY is not valid base64") from exc
    if len(key) != ENCRYPTION_KEY_BYTES:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must decode to exactly {ENCRYPTION_KEY_BYTES} bytes",
            {"actual_bytes": len(key)},
        )
    return key


class CredentialVault:
    """Symmetric encrypt/decrypt of tenant secrets. Pure transform."""

    def __init__(self, key: bytes) -> None:
        if len(key) != ENCRYPTION_KEY_BYTES:
            raise ConfigurationError(
                f"encryption key must be exactly {ENCRYPTION_KEY_BYTES} bytes",
                {"actual_bytes": len(key)},
            )
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_settings(cls) -> CredentialVault:
        return cls(decode_key(get_settings().encryption_key.get_secret_value()))

    def __repr__(self) -> str:
        return "CredentialVault(key=***)"

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(ENVELOPE_IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-ENVELOPE_TAG_BYTES], sealed[-ENVELOPE_TAG_BYTES:]
        return ENVELOPE_SEPARATOR.join((iv.hex(), tag.hex(), ciphertext.hex()))

    def decrypt(self, envelope: str) -> str:
        parts = envelope.split(ENVELOPE_SEPARATOR)
        if len(parts) != 3:
            raise DecryptionError(
                "invalid envelope format", {"parts": len(parts)},
            )
        if not all(_HEX_RE.fullmatch(p) for p in parts):
            raise DecryptionError("envelope part is not valid lowercase hex")
        iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
        if len(iv) != ENVELOPE_IV_BYTES or len(tag) != ENVELOPE_TAG_BYTES:
            raise DecryptionError("envelope iv or tag has the wrong length")
        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("envelope failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("decrypted secret is not valid utf-8") from exc
