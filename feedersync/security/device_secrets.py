"""Device secret storage: integrity hash and AES-GCM envelope.

A device secret must be recoverable (the server recomputes HMACs with it)
but never stored in cleartext.  Two independent artifacts are persisted:

* ``secret_hash``: SHA-256 hex of the secret.  After decryption the hash is
  recomputed and compared; a mismatch means a rotation or key bug, and the
  poll is refused before any signature is trusted.
* ``encrypted_secret``: ``nonce(12) || ciphertext || tag(16)`` produced by
  AES-GCM under the server master key (``DEVICE_SECRET_ENCRYPTION_KEY``).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from feedersync.errors import ConfigurationError

NONCE_SIZE = 12
TAG_SIZE = 16
VALID_KEY_SIZES = (16, 24, 32)


class SecretDecryptionError(Exception):
    """The envelope could not be opened (truncated, tampered or wrong key)."""


def generate_secret() -> str:
    """Return a fresh device secret: 32 random bytes, URL-safe base64."""
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).rstrip(b"=").decode("ascii")


class SecretHasher:
    """One-way fixed-length fingerprint of a device secret."""

    def hash(self, secret: str) -> str:
        return hashlib.sha256(secret.encode("utf-8")).hexdigest()

    def matches(self, secret: str, expected_hash: str | None) -> bool:
        if not expected_hash:
            return False
        return hmac.compare_digest(
            self.hash(secret).encode("ascii"),
            expected_hash.strip().lower().encode("utf-8"),
        )


class SecretEnvelope:
    """Authenticated encryption of device secrets under a server master key."""

    def __init__(self, master_key_b64: str) -> None:
        try:
            key = base64.b64decode(master_key_b64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ConfigurationError(
                "DEVICE_SECRET_ENCRYPTION_KEY must be valid base64"
            ) from exc
        if len(key) not in VALID_KEY_SIZES:
            raise ConfigurationError(
                "DEVICE_SECRET_ENCRYPTION_KEY must decode to 16/24/32 bytes"
            )
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)

    def decrypt(self, envelope: bytes) -> str:
        if envelope is None or len(envelope) < NONCE_SIZE + TAG_SIZE:
            raise SecretDecryptionError("envelope truncated")
        nonce, ciphertext = bytes(envelope[:NONCE_SIZE]), bytes(envelope[NONCE_SIZE:])
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise SecretDecryptionError("envelope authentication failed") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SecretDecryptionError("envelope plaintext is not UTF-8") from exc
