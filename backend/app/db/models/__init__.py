"""Database model registry. Import all models here so Alembic can discover them."""

from app.db.models.appointment import Appointment
from app.db.models.audit import AuditAction, AuditEntry, ImmutableEntryError, ResourceType
from app.db.models.note import NoteType, SecureNote
from app.db.models.user import RoleEnum, User

__all__ = [
    "Appointment",
    "AuditAction",
    "AuditEntry",
    "ImmutableEntryError",
    "NoteType",
    "ResourceType",
    "RoleEnum",
    "SecureNote",
    "User",
]
