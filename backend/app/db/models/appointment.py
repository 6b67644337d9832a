"""
Appointment binding model.

The note store only needs the participant pair of an appointment; the
scheduling lifecycle belongs to the appointment service.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Appointment(Base, UUIDPrimaryKeyMixin, TimestampMixin):
    """Binds one patient to one doctor for a consultation."""

    __tablename__ = "appointments"

    patient_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    doctor_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="scheduled")
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Appointment {self.id} doctor={self.doctor_id} patient={self.patient_id}>"
