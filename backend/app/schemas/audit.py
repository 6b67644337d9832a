"""Audit entry schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from app.db.models.audit import AuditAction, ResourceType


class AuditEntryOut(BaseModel):
    id: str
    resource_type: ResourceType
    resource_id: str
    sequence: int
    actor_id: str
    action: AuditAction
    access_reason: str | None
    old_value_masked: str | None
    old_value_hash: str | None
    new_value_masked: str | None
    new_value_hash: str | None
    ip_address: str | None
    user_agent: str | None
    correlation_id: str | None
    entry_hash: str
    prev_hash: str | None
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditListResponse(BaseModel):
    items: list[AuditEntryOut]
    total: int
    page: int
    page_size: int


class ChainVerificationResult(BaseModel):
    is_valid: bool
    total_entries: int
    first_broken_at: str | None = Field(
        default=None, description="ID of the first entry with a broken hash link"
    )
    message: str


class KeyOut(BaseModel):
    key_id: str
    status: str
    installed_at: datetime
    note_count: int


class KeyListResponse(BaseModel):
    active_key_id: str
    keys: list[KeyOut]
    notes_requiring_rotation: list[str]
