"""Secure note request / response schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from app.db.models.note import NoteType


class CreateNoteRequest(BaseModel):
    context_id: str = Field(..., min_length=1, max_length=36, description="Appointment id")
    content: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=1000)
    note_type: NoteType = NoteType.CONSULTATION


class CreateNoteResponse(BaseModel):
    id: str


class AccessRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000, description="Business justification")


class UpdateNoteRequest(BaseModel):
    content: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=1000)
    note_type: NoteType | None = None
    expected_version: int | None = Field(
        default=None, ge=1, description="Reject the update unless the note is at this version"
    )


class UpdateNoteResponse(BaseModel):
    id: str
    version: int


class NoteOut(BaseModel):
    id: str
    context_id: str
    subject_id: str
    author_id: str
    note_type: NoteType
    version: int
    is_archived: bool
    content: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class NoteListResponse(BaseModel):
    items: list[NoteOut]
    count: int
