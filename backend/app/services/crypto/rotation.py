"""
Key administration: rotation, usage reporting and guarded revocation.

These are out-of-band operator actions. No note is re-encrypted here;
notes move to the new key when they are next updated.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import ConflictError, ErrorCode
from app.db.models.note import SecureNote
from app.services.crypto.keyring import KeyEntry, KeyRing

_log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class KeyUsage:
    key: KeyEntry
    note_count: int


class KeyRotationService:
    def __init__(
        self,
        keyring: KeyRing,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self._keyring = keyring
        self._session_factory = session_factory

    def rotate(self, new_key_id: str | None = None) -> str:
        return self._keyring.rotate(new_key_id)

    async def key_usage(self) -> list[KeyUsage]:
        """Number of notes (archived included) encrypted under each key."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(SecureNote.encryption_key_id, func.count())
                .group_by(SecureNote.encryption_key_id)
            )
            counts = {key_id: count for key_id, count in result.all()}
        return [KeyUsage(key=e, note_count=counts.get(e.key_id, 0)) for e in self._keyring.entries()]

    async def records_requiring_rotation(self, limit: int = 100) -> list[str]:
        """Ids of live notes still encrypted under a non-active key."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(SecureNote.id)
                .where(
                    SecureNote.encryption_key_id != self._keyring.active_key_id,
                    SecureNote.is_archived.is_(False),
                )
                .order_by(SecureNote.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def revoke(self, key_id: str) -> None:
        """Revoke a retired key once no note references it."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count())
                .select_from(SecureNote)
                .where(SecureNote.encryption_key_id == key_id)
            )
            in_use = result.scalar_one()
        if in_use:
            raise ConflictError(
                f"Key {key_id} is still referenced by {in_use} note(s)",
                code=ErrorCode.CRYPTO_KEY_IN_USE,
                detail={"key_id": key_id, "note_count": in_use},
            )
        self._keyring.revoke(key_id)
