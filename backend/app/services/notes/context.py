"""Context binding: which patient and doctor an appointment ties together."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import exc as sa_exc
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import NotFoundError, PersistenceError
from app.db.models.appointment import Appointment


@dataclass(frozen=True)
class ContextBinding:
    context_id: str
    subject_id: str
    author_id: str

    def participants(self) -> tuple[str, str]:
        return self.subject_id, self.author_id


class ContextResolver(Protocol):
    async def resolve(self, context_ref: str) -> ContextBinding:
        """Raises NotFoundError when the reference is unknown."""
        ...


class AppointmentContextResolver:
    """Resolves an appointment id to its patient/doctor pair."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def resolve(self, context_ref: str) -> ContextBinding:
        try:
            async with self._session_factory() as db:
                result = await db.execute(
                    select(Appointment.patient_id, Appointment.doctor_id).where(
                        Appointment.id == context_ref
                    )
                )
                row = result.first()
        except sa_exc.SQLAlchemyError as exc:
            raise PersistenceError("appointment could not be loaded") from exc
        if row is None:
            raise NotFoundError("Appointment", context_ref)
        return ContextBinding(context_id=context_ref, subject_id=row[0], author_id=row[1])
