"""Read-only, paginated access to the audit trail."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import ValidationError
from app.db.models.audit import AuditAction, AuditEntry, ResourceType

MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class AuditPage:
    items: list[AuditEntry]
    total: int
    page: int
    page_size: int


class AuditQueryService:
    """
    Lists audit entries for one record or one actor, newest first.

    Entries hold masked values only, so this service never needs a key.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list(
        self,
        record_id: str | None = None,
        actor_id: str | None = None,
        *,
        resource_type: ResourceType = ResourceType.SECURE_NOTE,
        page: int = 1,
        page_size: int = 50,
        action: AuditAction | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> AuditPage:
        if (record_id is None) == (actor_id is None):
            raise ValidationError("exactly one of record_id or actor_id is required")
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
        if start and end and start > end:
            raise ValidationError("start must not be after end")

        query = select(AuditEntry)
        if record_id is not None:
            query = query.where(
                AuditEntry.resource_type == resource_type,
                AuditEntry.resource_id == record_id,
            )
        else:
            query = query.where(AuditEntry.actor_id == actor_id)
        if action is not None:
            query = query.where(AuditEntry.action == action)
        if start is not None:
            query = query.where(AuditEntry.created_at >= start)
        if end is not None:
            query = query.where(AuditEntry.created_at <= end)

        async with self._session_factory() as db:
            count = await db.execute(select(func.count()).select_from(query.subquery()))
            total = count.scalar_one()
            result = await db.execute(
                query.order_by(AuditEntry.created_at.desc(), AuditEntry.sequence.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            items = list(result.scalars().all())

        return AuditPage(items=items, total=total, page=page, page_size=page_size)
