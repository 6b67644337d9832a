"""
Persistence for secure notes.

Each call runs in its own short session and commits before returning, so
the store can order "record write" strictly before "audit write".
"""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import exc as sa_exc
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import PersistenceError
from app.db.models.note import SecureNote

_log = structlog.get_logger(__name__)


class NoteRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def insert(self, note: SecureNote) -> SecureNote:
        try:
            async with self._session_factory() as db:
                db.add(note)
                await db.commit()
        except sa_exc.SQLAlchemyError as exc:
            _log.error("note_insert_failed", context_id=note.context_id, error=exc.__class__.__name__)
            # A create may have reached the database; retrying could duplicate it.
            raise PersistenceError("note could not be stored", retryable=False) from exc
        return note

    async def get(self, note_id: str) -> SecureNote | None:
        try:
            async with self._session_factory() as db:
                return await db.get(SecureNote, note_id)
        except sa_exc.SQLAlchemyError as exc:
            raise PersistenceError("note could not be loaded") from exc

    async def compare_and_swap(self, note_id: str, expected_version: int, **values: Any) -> bool:
        """
        Apply ``values`` only if the stored version still equals
        ``expected_version``. Bumps the version on success.

        Returns False when another writer got there first.
        """
        stmt = (
            update(SecureNote)
            .where(SecureNote.id == note_id, SecureNote.version == expected_version)
            .values(version=SecureNote.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as db:
                result = await db.execute(stmt)
                await db.commit()
        except sa_exc.SQLAlchemyError as exc:
            raise PersistenceError("note could not be updated") from exc
        return result.rowcount == 1

    async def list_by_context(self, context_id: str, include_archived: bool = False) -> list[SecureNote]:
        query = select(SecureNote).where(SecureNote.context_id == context_id)
        if not include_archived:
            query = query.where(SecureNote.is_archived.is_(False))
        return await self._list(query.order_by(SecureNote.created_at.desc()))

    async def list_by_subject(
        self,
        subject_id: str,
        limit: int,
        offset: int,
        include_archived: bool = False,
    ) -> list[SecureNote]:
        query = select(SecureNote).where(SecureNote.subject_id == subject_id)
        if not include_archived:
            query = query.where(SecureNote.is_archived.is_(False))
        return await self._list(
            query.order_by(SecureNote.created_at.desc()).offset(offset).limit(limit)
        )

    async def _list(self, query: Any) -> list[SecureNote]:
        try:
            async with self._session_factory() as db:
                result = await db.execute(query)
                return list(result.scalars().all())
        except sa_exc.SQLAlchemyError as exc:
            raise PersistenceError("notes could not be listed") from exc
