"""Audit trail API endpoints."""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Query

from app.api.deps import CurrentActor, ServicesDep
from app.core.errors import ErrorCode, ForbiddenError, NotFoundError
from app.db.models.audit import AuditAction, ResourceType
from app.db.models.user import RoleEnum
from app.schemas.audit import AuditEntryOut, AuditListResponse, ChainVerificationResult
from app.services.audit.query import AuditPage
from app.services.notes.policy import NoteAction

router = APIRouter(tags=["audit"])


def _page_out(page: AuditPage) -> AuditListResponse:
    return AuditListResponse(
        items=[AuditEntryOut.model_validate(e) for e in page.items],
        total=page.total,
        page=page.page,
        page_size=page.page_size,
    )


async def _authorize_note_audit(services: ServicesDep, note_id: str, actor: CurrentActor) -> None:
    note = await services.store.load_metadata(note_id)
    if note is None:
        raise NotFoundError("SecureNote", note_id, code=ErrorCode.NOTE_NOT_FOUND)
    decision = services.policy.evaluate(actor, note, NoteAction.VIEW_AUDIT)
    if not decision.allowed:
        raise ForbiddenError("Not permitted to view this note's audit trail")


@router.get(
    "/notes/{note_id}/audit",
    response_model=AuditListResponse,
    summary="List audit entries of a note",
)
async def list_note_audit(
    note_id: str,
    actor: CurrentActor,
    services: ServicesDep,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    action: AuditAction | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> AuditListResponse:
    """Return the note's audit entries, newest first. Values are masked."""
    await _authorize_note_audit(services, note_id, actor)
    result = await services.audit_query.list(
        record_id=note_id,
        page=page,
        page_size=page_size,
        action=action,
        start=start,
        end=end,
    )
    return _page_out(result)


@router.get(
    "/notes/{note_id}/audit/verify",
    response_model=ChainVerificationResult,
    summary="Verify a note's audit hash chain",
)
async def verify_note_audit(
    note_id: str,
    actor: CurrentActor,
    services: ServicesDep,
) -> ChainVerificationResult:
    await _authorize_note_audit(services, note_id, actor)
    result = await services.recorder.verify_chain(ResourceType.SECURE_NOTE, note_id)
    return ChainVerificationResult(
        is_valid=result.is_valid,
        total_entries=result.total_entries,
        first_broken_at=result.first_broken_at,
        message=(
            "Chain is intact."
            if result.is_valid
            else f"Chain broken at entry {result.first_broken_at}."
        ),
    )


@router.get(
    "/audit/actors/{actor_id}",
    response_model=AuditListResponse,
    summary="List audit entries written for an actor",
)
async def list_actor_audit(
    actor_id: str,
    actor: CurrentActor,
    services: ServicesDep,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    action: AuditAction | None = Query(default=None),
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
) -> AuditListResponse:
    """Admins may list anyone's activity; everyone else only their own."""
    if not actor.is_active or (actor.id != actor_id and actor.role != RoleEnum.ADMIN):
        raise ForbiddenError("Not permitted to view this actor's audit trail")
    result = await services.audit_query.list(
        actor_id=actor_id,
        page=page,
        page_size=page_size,
        action=action,
        start=start,
        end=end,
    )
    return _page_out(result)
