"""
Immutable audit entry model.

Entries of one resource form a hash chain: each entry records the SHA-256
hash of the previous entry of the same resource and a 1-based sequence
number. The unique (resource_type, resource_id, sequence) constraint stops
two writers from forking a chain; the ORM guards below stop any UPDATE or
DELETE from being issued against the table.

The chain can be verified via AuditTrailRecorder.verify_chain().
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Index, Integer, String, UniqueConstraint, event
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, Mapper, ORMExecuteState, Session, mapped_column

from app.db.base import Base, CreatedAtMixin, UUIDPrimaryKeyMixin


class ResourceType(StrEnum):
    """Kinds of audited resource sharing the one audit trail."""

    SECURE_NOTE = "secure_note"
    APPOINTMENT = "appointment"
    PAYMENT = "payment"
    VIDEO_SESSION = "video_session"
    ADMIN_ACTION = "admin_action"


class AuditAction(StrEnum):
    CREATED = "created"
    ACCESSED = "accessed"
    UPDATED = "updated"
    ARCHIVED = "archived"
    ACCESS_DENIED = "access_denied"


# Actions that must carry a business justification.
REASON_REQUIRED = frozenset(
    {AuditAction.CREATED, AuditAction.ACCESSED, AuditAction.UPDATED, AuditAction.ARCHIVED}
)


class ImmutableEntryError(RuntimeError):
    """Raised when code tries to modify or delete an audit entry."""


class AuditEntry(Base, UUIDPrimaryKeyMixin, CreatedAtMixin):
    """Single immutable audit entry."""

    __tablename__ = "audit_entries"
    __table_args__ = (
        UniqueConstraint(
            "resource_type", "resource_id", "sequence", name="uq_audit_entries_resource_sequence"
        ),
        UniqueConstraint("entry_hash", name="uq_audit_entries_entry_hash"),
        Index("ix_audit_entries_resource", "resource_type", "resource_id"),
        Index("ix_audit_entries_actor_created", "actor_id", "created_at"),
    )

    resource_type: Mapped[ResourceType] = mapped_column(
        SAEnum(ResourceType, name="audit_resource_type", native_enum=False, length=30),
        nullable=False,
    )
    resource_id: Mapped[str] = mapped_column(String(36), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    actor_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[AuditAction] = mapped_column(
        SAEnum(AuditAction, name="audit_action", native_enum=False, length=30),
        nullable=False,
        index=True,
    )
    access_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Masked prefix plus keyed fingerprint; never the full value.
    old_value_masked: Mapped[str | None] = mapped_column(String(64), nullable=True)
    old_value_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_value_masked: Mapped[str | None] = mapped_column(String(64), nullable=True)
    new_value_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)

    # Hash of this entry (covers all fields except entry_hash itself)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    # Hash of the previous entry of the same resource; null for the first
    prev_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditEntry {self.resource_type}:{self.resource_id}#{self.sequence} {self.action}>"


@event.listens_for(AuditEntry, "before_update")
def _forbid_update(_mapper: Mapper[AuditEntry], _connection: object, target: AuditEntry) -> None:
    raise ImmutableEntryError(f"audit entry {target.id} is immutable")


@event.listens_for(AuditEntry, "before_delete")
def _forbid_delete(_mapper: Mapper[AuditEntry], _connection: object, target: AuditEntry) -> None:
    raise ImmutableEntryError(f"audit entry {target.id} cannot be deleted")


@event.listens_for(Session, "do_orm_execute")
def _forbid_bulk_mutation(state: ORMExecuteState) -> None:
    if not (state.is_update or state.is_delete):
        return
    mapper = state.bind_mapper
    if mapper is not None and mapper.class_ is AuditEntry:
        raise ImmutableEntryError("bulk UPDATE/DELETE against audit_entries is forbidden")
