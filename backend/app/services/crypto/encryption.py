"""
Application-level encryption for note content.

AES-256-GCM with a random 96-bit nonce; the key id is bound as associated
data so a ciphertext cannot be replayed under a different key id. Stored
form is base64(nonce || ciphertext || tag). The SHA-256 of the plaintext is
kept beside the ciphertext and re-checked on every decrypt.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import os
from dataclasses import dataclass

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.errors import IntegrityError, ValidationError
from app.core.security import safe_str_compare
from app.services.crypto.keyring import KeyRing

_log = structlog.get_logger(__name__)

NONCE_BYTES = 12


@dataclass(frozen=True)
class EncryptedPayload:
    """Ciphertext envelope as persisted on a note."""

    ciphertext: str
    content_hash: str
    key_id: str


def content_hash(plaintext: str) -> str:
    """Hex SHA-256 of the UTF-8 plaintext."""
    return hashlib.sha256(plaintext.encode("utf-8")).hexdigest()


class EncryptionService:
    """Turns plaintext into an integrity-checked envelope and back."""

    def __init__(self, keyring: KeyRing) -> None:
        self._keyring = keyring

    @property
    def keyring(self) -> KeyRing:
        return self._keyring

    def encrypt(self, plaintext: str) -> EncryptedPayload:
        """Encrypt under the current active key."""
        if not plaintext:
            raise ValidationError("plaintext cannot be empty")

        key_id, key = self._keyring.active_key()
        nonce = os.urandom(NONCE_BYTES)
        sealed = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), key_id.encode("utf-8"))

        return EncryptedPayload(
            ciphertext=base64.b64encode(nonce + sealed).decode("ascii"),
            content_hash=content_hash(plaintext),
            key_id=key_id,
        )

    def decrypt(self, payload: EncryptedPayload) -> str:
        """
        Decrypt and verify an envelope.

        Raises:
            KeyNotFoundError: payload.key_id is unknown or revoked.
            IntegrityError: ciphertext undecodable, unauthenticated, or
                its plaintext hash differs from payload.content_hash.
        """
        key = self._keyring.resolve(payload.key_id)

        try:
            raw = base64.b64decode(payload.ciphertext, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise IntegrityError("ciphertext is not valid base64", key_id=payload.key_id) from exc

        # Non-zero padding bits decode to the same bytes; reject such edits.
        if base64.b64encode(raw).decode("ascii") != payload.ciphertext:
            raise IntegrityError("ciphertext is not canonical base64", key_id=payload.key_id)

        if len(raw) <= NONCE_BYTES:
            raise IntegrityError("ciphertext too short", key_id=payload.key_id)

        nonce, sealed = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
        try:
            plain_bytes = AESGCM(key).decrypt(nonce, sealed, payload.key_id.encode("utf-8"))
        except InvalidTag as exc:
            raise IntegrityError("ciphertext failed authentication", key_id=payload.key_id) from exc

        try:
            plaintext = plain_bytes.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise IntegrityError("plaintext is not valid UTF-8", key_id=payload.key_id) from exc

        if not safe_str_compare(content_hash(plaintext), payload.content_hash):
            _log.error("content_hash_mismatch", key_id=payload.key_id)
            raise IntegrityError("content hash mismatch", key_id=payload.key_id)

        return plaintext
