"""Secure note API endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.api.deps import CurrentActor, RequestCtx, ServicesDep
from app.core.rate_limit import enforce_note_access_limit
from app.schemas.note import (
    AccessRequest,
    CreateNoteRequest,
    CreateNoteResponse,
    NoteListResponse,
    NoteOut,
    UpdateNoteRequest,
    UpdateNoteResponse,
)
from app.services.notes.store import DecryptedNote

router = APIRouter(tags=["notes"])


def _out(note: DecryptedNote) -> NoteOut:
    return NoteOut.model_validate(note)


@router.post(
    "/notes",
    response_model=CreateNoteResponse,
    status_code=201,
    summary="Create an encrypted note for an appointment",
)
async def create_note(
    body: CreateNoteRequest,
    actor: CurrentActor,
    services: ServicesDep,
    ctx: RequestCtx,
) -> CreateNoteResponse:
    note_id = await services.store.create(
        body.context_id,
        actor,
        body.content,
        body.reason,
        note_type=body.note_type,
        request=ctx,
    )
    return CreateNoteResponse(id=note_id)


@router.post(
    "/notes/{note_id}/access",
    response_model=NoteOut,
    summary="Decrypt one note (audited)",
    dependencies=[Depends(enforce_note_access_limit)],
)
async def access_note(
    note_id: str,
    body: AccessRequest,
    actor: CurrentActor,
    services: ServicesDep,
    ctx: RequestCtx,
) -> NoteOut:
    """POST rather than GET because every read carries a justification."""
    note = await services.store.get(note_id, actor, body.reason, request=ctx)
    return _out(note)


@router.put(
    "/notes/{note_id}",
    response_model=UpdateNoteResponse,
    summary="Replace a note's content",
)
async def update_note(
    note_id: str,
    body: UpdateNoteRequest,
    actor: CurrentActor,
    services: ServicesDep,
    ctx: RequestCtx,
) -> UpdateNoteResponse:
    version = await services.store.update(
        note_id,
        actor,
        body.content,
        body.reason,
        note_type=body.note_type,
        expected_version=body.expected_version,
        request=ctx,
    )
    return UpdateNoteResponse(id=note_id, version=version)


@router.post(
    "/notes/{note_id}/archive",
    status_code=204,
    summary="Archive a note (idempotent)",
)
async def archive_note(
    note_id: str,
    body: AccessRequest,
    actor: CurrentActor,
    services: ServicesDep,
    ctx: RequestCtx,
) -> None:
    await services.store.archive(note_id, actor, body.reason, request=ctx)


@router.post(
    "/appointments/{context_id}/notes/access",
    response_model=NoteListResponse,
    summary="Decrypt all readable notes of an appointment",
    dependencies=[Depends(enforce_note_access_limit)],
)
async def access_appointment_notes(
    context_id: str,
    body: AccessRequest,
    actor: CurrentActor,
    services: ServicesDep,
    ctx: RequestCtx,
) -> NoteListResponse:
    notes = await services.store.batch_get_by_context(context_id, actor, body.reason, request=ctx)
    return NoteListResponse(items=[_out(n) for n in notes], count=len(notes))


@router.post(
    "/patients/{subject_id}/notes/access",
    response_model=NoteListResponse,
    summary="Decrypt a page of a patient's readable notes",
    dependencies=[Depends(enforce_note_access_limit)],
)
async def access_patient_notes(
    subject_id: str,
    body: AccessRequest,
    actor: CurrentActor,
    services: ServicesDep,
    ctx: RequestCtx,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> NoteListResponse:
    notes = await services.store.batch_get_by_subject(
        subject_id, actor, body.reason, limit=limit, offset=offset, request=ctx
    )
    return NoteListResponse(items=[_out(n) for n in notes], count=len(notes))
