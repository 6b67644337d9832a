"""
Key ring: key id → key material plus status.

Material for every key id is derived from one 256-bit master key with
HKDF-SHA256 (the key id is the HKDF ``info``), so restarting with the same
master key and key-id lists reproduces every key without storing material.

Lookups are in-memory and never block. Rotation is an administrative step:
the active key becomes retired and a new active key is installed; nothing is
re-encrypted until a note is explicitly updated.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

import structlog
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from app.config.settings import Settings
from app.core.errors import KeyNotFoundError, ValidationError

_log = structlog.get_logger(__name__)

_HKDF_SALT = b"echovault.keyring.v1"


class KeyStatus(StrEnum):
    ACTIVE = "active"
    RETIRED = "retired"
    REVOKED = "revoked"


@dataclass
class KeyEntry:
    """Represents an encryption key with metadata."""

    key_id: str
    material: bytes = field(repr=False)
    status: KeyStatus
    installed_at: datetime

    def to_dict(self) -> dict[str, str]:
        """Serialize key metadata (without material)."""
        return {
            "key_id": self.key_id,
            "status": self.status.value,
            "installed_at": self.installed_at.isoformat(),
        }


def derive_key(master_key: bytes, key_id: str) -> bytes:
    """Derive 32 bytes of AES-256 key material for ``key_id``."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=_HKDF_SALT,
        info=key_id.encode("utf-8"),
    )
    return hkdf.derive(master_key)


class KeyRing:
    """In-memory key ring with exactly one active key."""

    def __init__(
        self,
        master_key: bytes,
        active_key_id: str,
        retired_key_ids: Iterable[str] = (),
        revoked_key_ids: Iterable[str] = (),
    ) -> None:
        if len(master_key) != 32:
            raise ValidationError("master key must be 32 bytes")
        self._master_key = master_key
        self._keys: dict[str, KeyEntry] = {}
        for key_id in retired_key_ids:
            self._install(key_id, KeyStatus.RETIRED)
        for key_id in revoked_key_ids:
            self._install(key_id, KeyStatus.REVOKED)
        self._install(active_key_id, KeyStatus.ACTIVE)
        self._active_key_id = active_key_id

        _log.info(
            "keyring_loaded",
            active_key_id=active_key_id,
            retired=len(self.key_ids(KeyStatus.RETIRED)),
            revoked=len(self.key_ids(KeyStatus.REVOKED)),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> KeyRing:
        return cls(
            master_key=settings.master_key_bytes,
            active_key_id=settings.encryption_active_key_id,
            retired_key_ids=settings.encryption_retired_key_ids,
            revoked_key_ids=settings.encryption_revoked_key_ids,
        )

    def _install(self, key_id: str, status: KeyStatus) -> KeyEntry:
        if not key_id or len(key_id) > 36:
            raise ValidationError("key id must be 1-36 characters", detail={"key_id": key_id})
        entry = KeyEntry(
            key_id=key_id,
            material=derive_key(self._master_key, key_id),
            status=status,
            installed_at=datetime.now(UTC),
        )
        self._keys[key_id] = entry
        return entry

    @property
    def active_key_id(self) -> str:
        return self._active_key_id

    def active_key(self) -> tuple[str, bytes]:
        """Return ``(key_id, material)`` of the key used for new encryptions."""
        entry = self._keys[self._active_key_id]
        return entry.key_id, entry.material

    def resolve(self, key_id: str) -> bytes:
        """
        Return material for an active or retired key.

        Raises:
            KeyNotFoundError: unknown or revoked key id.
        """
        entry = self._keys.get(key_id)
        if entry is None:
            raise KeyNotFoundError(key_id)
        if entry.status == KeyStatus.REVOKED:
            raise KeyNotFoundError(key_id, revoked=True)
        return entry.material

    def status_of(self, key_id: str) -> KeyStatus | None:
        entry = self._keys.get(key_id)
        return entry.status if entry else None

    def key_ids(self, status: KeyStatus | None = None) -> list[str]:
        return [k for k, e in self._keys.items() if status is None or e.status == status]

    def entries(self) -> list[KeyEntry]:
        return list(self._keys.values())

    def rotate(self, new_key_id: str | None = None) -> str:
        """
        Retire the active key and install a new active one.

        The new key id must be added to configuration before restart, or
        notes written under it become unreadable.
        """
        key_id = new_key_id or str(uuid.uuid4())
        if key_id in self._keys:
            raise ValidationError("key id already present in key ring", detail={"key_id": key_id})

        previous = self._keys[self._active_key_id]
        previous.status = KeyStatus.RETIRED
        self._install(key_id, KeyStatus.ACTIVE)
        self._active_key_id = key_id

        _log.warning(
            "key_rotated",
            retired_key_id=previous.key_id,
            new_key_id=key_id,
        )
        return key_id

    def revoke(self, key_id: str) -> None:
        """
        Mark a retired key revoked. Callers must first confirm no note
        still references it (see KeyRotationService.revoke).
        """
        entry = self._keys.get(key_id)
        if entry is None:
            raise KeyNotFoundError(key_id)
        if entry.status == KeyStatus.ACTIVE:
            raise ValidationError("cannot revoke the active key; rotate first")
        entry.status = KeyStatus.REVOKED
        _log.warning("key_revoked", key_id=key_id)
