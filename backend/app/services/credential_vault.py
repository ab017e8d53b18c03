# Overview: Symmetric authenticated encryption for stored automation credentials.

"""
Credential Vault

AES-256-GCM via the `cryptography` package.

FORMAT: base64( nonce[12] || ciphertext || tag[16] )

- Every encrypt() draws a fresh random nonce, so encrypting the same
  plaintext twice yields different ciphertexts.
- The key must be exactly 32 bytes. A wrong length fails at construction
  time; keys are never padded or truncated.
- Structural problems (bad base64, too short) raise InvalidCiphertext.
  Authentication failures (wrong key, tampering) raise DecryptionFailed.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16


class CryptoError(Exception):
    """Base for vault failures surfaced to admin config flows."""
    kind = "CryptoError"


class InvalidKeySize(CryptoError):
    kind = "InvalidKeySize"


class InvalidCiphertext(CryptoError):
    kind = "InvalidCiphertext"


class DecryptionFailed(CryptoError):
    kind = "DecryptionFailed"


def _key_bytes(key: bytes | str) -> bytes:
    if isinstance(key, str):
        key = key.encode("utf-8")
    if not isinstance(key, (bytes, bytearray)):
        raise InvalidKeySize("encryption key must be bytes or text")
    if len(key) != KEY_SIZE:
        raise InvalidKeySize(f"encryption key must be exactly {KEY_SIZE} bytes, got {len(key)}")
    return bytes(key)


def generate_key() -> str:
    """
    New random key as base64 text.

    The text form is 44 characters; decode it before handing it to the
    vault, or use `CredentialVault.from_base64`.
    """
    return base64.b64encode(os.urandom(KEY_SIZE)).decode("ascii")


class CredentialVault:
    def __init__(self, key: bytes | str):
        self._aead = AESGCM(_key_bytes(key))

    @classmethod
    def from_base64(cls, encoded: str) -> "CredentialVault":
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            raise InvalidKeySize("encryption key is not valid base64")
        return cls(raw)

    @classmethod
    def from_config(cls, value: str) -> "CredentialVault":
        """
        Accepts either a 32-character key or the base64 text produced by
        generate_key().
        """
        if isinstance(value, str) and len(value.encode("utf-8")) != KEY_SIZE:
            return cls.from_base64(value)
        return cls(value)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext:
            raise InvalidCiphertext("ciphertext is empty")
        try:
            raw = base64.b64decode(ciphertext, validate=True)
        except (binascii.Error, ValueError):
            raise InvalidCiphertext("ciphertext is not valid base64")
        if len(raw) < NONCE_SIZE + TAG_SIZE:
            raise InvalidCiphertext("ciphertext too short")

        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag:
            raise DecryptionFailed("ciphertext failed authentication")
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionFailed("decrypted payload is not valid text")
