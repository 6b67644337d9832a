"""
Secure note model.

Only ciphertext, its plaintext hash and the key id are stored; plaintext
exists solely inside a request. ``version`` is the compare-and-swap guard
for every mutation.

subject_id, author_id and context_id reference collaborators (users,
appointments) by id only, without foreign keys, so the binding service can
live in another database.
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from app.db.models.audit import ResourceType


class NoteType(StrEnum):
    CONSULTATION = "consultation"
    DIAGNOSIS = "diagnosis"
    TREATMENT = "treatment"
    PROGRESS = "progress"
    PRESCRIPTION = "prescription"
    REFERRAL = "referral"
    FOLLOW_UP = "follow_up"


class SecureNote(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """An encrypted clinical note bound to one appointment."""

    __tablename__ = "secure_notes"
    __table_args__ = (
        Index("ix_secure_notes_subject_archived", "subject_id", "is_archived"),
        Index("ix_secure_notes_context_archived", "context_id", "is_archived"),
    )

    context_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    subject_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    author_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    encrypted_content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    encryption_key_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    note_type: Mapped[NoteType] = mapped_column(
        SAEnum(NoteType, name="note_type", native_enum=False, length=30),
        nullable=False,
        default=NoteType.CONSULTATION,
    )
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    @property
    def audit_resource_type(self) -> ResourceType:
        return ResourceType.SECURE_NOTE

    @property
    def audit_resource_id(self) -> str:
        return self.id

    def __repr__(self) -> str:
        return f"<SecureNote {self.id} v{self.version}{' archived' if self.is_archived else ''}>"
