"""
Database model for platform users.

Only the identity facts the note store consumes are kept here: the role
and whether the account is active. Credentials live with the identity
service and never reach this database.
"""

from __future__ import annotations

from enum import StrEnum

from sqlalchemy import Boolean, String, UniqueConstraint
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class RoleEnum(StrEnum):
    """Application-level role definitions."""

    ADMIN = "admin"
    DOCTOR = "doctor"
    PATIENT = "patient"


class User(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """User entity with role and activation flag."""

    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("username", name="uq_users_username"),)

    username: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    role: Mapped[RoleEnum] = mapped_column(
        SAEnum(RoleEnum, name="user_role", native_enum=False, length=20),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<User {self.username} [{self.role}]>"
